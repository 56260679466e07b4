import json
import logging
import math
import sqlite3
from datetime import datetime

from .attendance import AttendanceRecord
from .config import DB_PATH

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "milliseconds"


def _connect():
    return sqlite3.connect(DB_PATH)


def _format_timestamp(value):
    return value.isoformat(sep=" ", timespec=TIMESTAMP_FORMAT)


def _parse_timestamp(value):
    return datetime.fromisoformat(value)


def setup_database():
    """Create the tables if they do not exist"""
    conn = _connect()
    cursor = conn.cursor()

    # One row per registered person; the name is the key
    cursor.execute('''
    CREATE TABLE IF NOT EXISTS registered_faces (
        name TEXT PRIMARY KEY,
        descriptor TEXT NOT NULL,
        timestamp TEXT NOT NULL
    )
    ''')

    # Append-only attendance events
    cursor.execute('''
    CREATE TABLE IF NOT EXISTS attendance_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        distance REAL
    )
    ''')
    cursor.execute('''
    CREATE INDEX IF NOT EXISTS idx_attendance_records_timestamp
    ON attendance_records (timestamp)
    ''')

    conn.commit()
    conn.close()
    logger.info("Database tables initialized at %s", DB_PATH)


def register_face(name, descriptor, timestamp=None):
    """Insert a face descriptor, overwriting any previous one for the same name"""
    timestamp = timestamp or datetime.now()
    descriptor_json = json.dumps([float(value) for value in descriptor])
    conn = _connect()
    cursor = conn.cursor()
    cursor.execute('''
    INSERT INTO registered_faces (name, descriptor, timestamp) VALUES (?, ?, ?)
    ON CONFLICT(name) DO UPDATE SET descriptor = excluded.descriptor, timestamp = excluded.timestamp
    ''', (name, descriptor_json, _format_timestamp(timestamp)))
    conn.commit()
    conn.close()
    logger.info("Registered face for %r (%d values)", name, len(descriptor))


def get_registered_faces():
    """Return [{"name", "descriptor"}] for every registered face"""
    conn = _connect()
    cursor = conn.cursor()
    cursor.execute("SELECT name, descriptor FROM registered_faces ORDER BY name")
    rows = cursor.fetchall()
    conn.close()

    faces = []
    for name, descriptor_json in rows:
        try:
            descriptor = json.loads(descriptor_json)
        except ValueError:
            logger.warning("Skipping malformed descriptor stored for %r", name)
            continue
        if not isinstance(descriptor, list):
            logger.warning("Skipping non-array descriptor stored for %r", name)
            continue
        if not all(isinstance(value, (int, float)) and math.isfinite(value) for value in descriptor):
            logger.warning("Skipping descriptor with non-finite values stored for %r", name)
            continue
        faces.append({"name": name, "descriptor": descriptor})
    return faces


def get_registered_names():
    conn = _connect()
    cursor = conn.cursor()
    cursor.execute("SELECT name FROM registered_faces")
    names = {row[0] for row in cursor.fetchall()}
    conn.close()
    return names


def delete_registered_face(name):
    """Delete a registered face; returns False if the name was not registered"""
    conn = _connect()
    cursor = conn.cursor()
    cursor.execute("DELETE FROM registered_faces WHERE name = ?", (name,))
    deleted = cursor.rowcount > 0
    conn.commit()
    conn.close()
    if deleted:
        logger.info("Deleted face for %r", name)
    return deleted


def add_attendance_record(name, distance, timestamp=None):
    """Append an attendance record and return it as a dict"""
    timestamp = timestamp or datetime.now()
    formatted = _format_timestamp(timestamp)
    conn = _connect()
    cursor = conn.cursor()
    cursor.execute(
        "INSERT INTO attendance_records (name, timestamp, distance) VALUES (?, ?, ?)",
        (name, formatted, distance)
    )
    record_id = cursor.lastrowid
    conn.commit()
    conn.close()
    return {"id": record_id, "name": name, "timestamp": formatted, "distance": distance}


def save_record(record):
    """Persist an AttendanceRecord admitted by the reconciler"""
    return add_attendance_record(record.subject, record.confidence, record.marked_at)


def get_attendance_log(limit):
    """Most recent attendance records, newest first"""
    conn = _connect()
    cursor = conn.cursor()
    cursor.execute(
        "SELECT name, timestamp, distance FROM attendance_records ORDER BY timestamp DESC, id DESC LIMIT ?",
        (limit,)
    )
    records = [{"name": row[0], "timestamp": row[1], "distance": row[2]} for row in cursor.fetchall()]
    conn.close()
    return records


def get_attendance_records_between(start_at, end_at):
    """AttendanceRecords with start_at <= timestamp < end_at"""
    conn = _connect()
    cursor = conn.cursor()
    cursor.execute(
        "SELECT name, timestamp, distance FROM attendance_records WHERE timestamp >= ? AND timestamp < ?",
        (_format_timestamp(start_at), _format_timestamp(end_at))
    )
    rows = cursor.fetchall()
    conn.close()
    return [
        AttendanceRecord(name, _parse_timestamp(timestamp), distance)
        for name, timestamp, distance in rows
    ]
