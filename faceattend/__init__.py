from .attendance import (
    AttendanceReconciler,
    AttendanceRecord,
    Decision,
    InvalidArgument,
    Outcome,
    Reason,
    RecognitionEvent,
    ReportRow,
    ReportWindow,
)
from .database import setup_database
from .face_recognition import FaceMatcher, RosterMatcher

__all__ = [
    'AttendanceReconciler',
    'AttendanceRecord',
    'Decision',
    'InvalidArgument',
    'Outcome',
    'Reason',
    'RecognitionEvent',
    'ReportRow',
    'ReportWindow',
    'FaceMatcher',
    'RosterMatcher',
    'setup_database',
]
