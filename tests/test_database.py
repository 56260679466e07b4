import sqlite3
from datetime import timedelta

from faceattend import database
from faceattend.attendance import AttendanceRecord


def test_register_face_overwrites_existing_name(db_path):
    database.register_face("Alice", [0.1, 0.2, 0.3])
    database.register_face("Alice", [0.4, 0.5, 0.6])

    assert database.get_registered_faces() == [{"name": "Alice", "descriptor": [0.4, 0.5, 0.6]}]


def test_registered_names(db_path):
    database.register_face("Alice", [0.1])
    database.register_face("Bob", [0.2])
    assert database.get_registered_names() == {"Alice", "Bob"}


def test_delete_registered_face(db_path):
    database.register_face("Alice", [0.1])
    assert database.delete_registered_face("Alice") is True
    assert database.delete_registered_face("Alice") is False
    assert database.get_registered_faces() == []


def test_malformed_descriptor_is_skipped(db_path):
    database.register_face("Alice", [0.1])
    conn = sqlite3.connect(db_path)
    conn.execute(
        "INSERT INTO registered_faces (name, descriptor, timestamp) VALUES (?, ?, ?)",
        ("Broken", "not json", "2026-10-17 09:00:00.000"),
    )
    conn.commit()
    conn.close()

    assert [face["name"] for face in database.get_registered_faces()] == ["Alice"]


def test_attendance_log_is_newest_first_and_bounded(db_path, class_start):
    for minute in range(5):
        database.add_attendance_record(f"P{minute}", 0.4, class_start + timedelta(minutes=minute))

    log = database.get_attendance_log(3)
    assert [row["name"] for row in log] == ["P4", "P3", "P2"]
    assert log[0] == {"name": "P4", "timestamp": "2026-10-17 09:04:00.000", "distance": 0.4}


def test_records_between_is_half_open(db_path, class_start):
    database.add_attendance_record("Alice", 0.3, class_start)
    database.add_attendance_record("Alice", 0.3, class_start + timedelta(minutes=29, seconds=59))
    database.add_attendance_record("Alice", 0.3, class_start + timedelta(minutes=30))
    database.add_attendance_record("Alice", 0.3, class_start - timedelta(seconds=1))

    records = database.get_attendance_records_between(class_start, class_start + timedelta(minutes=30))
    assert sorted(record.marked_at for record in records) == [
        class_start,
        class_start + timedelta(minutes=29, seconds=59),
    ]


def test_save_record(db_path, class_start):
    saved = database.save_record(AttendanceRecord("Bob", class_start, 0.25))
    assert saved["id"] is not None
    assert database.get_attendance_records_between(class_start, class_start + timedelta(seconds=1)) == [
        AttendanceRecord("Bob", class_start, 0.25)
    ]


def test_non_finite_descriptor_is_skipped(db_path):
    database.register_face("Alice", [0.1])
    conn = sqlite3.connect(db_path)
    conn.execute(
        "INSERT INTO registered_faces (name, descriptor, timestamp) VALUES (?, ?, ?)",
        ("Mallory", "[NaN, 0.1]", "2026-10-17 09:00:00.000"),
    )
    conn.commit()
    conn.close()

    assert [face["name"] for face in database.get_registered_faces()] == ["Alice"]
