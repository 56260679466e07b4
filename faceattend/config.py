import os

from dotenv import load_dotenv

load_dotenv()

# Matching and attendance parameters
MATCH_THRESHOLD = float(os.getenv("MATCH_THRESHOLD", "0.6"))
DEFAULT_COOLDOWN_SECONDS = int(os.getenv("DEFAULT_COOLDOWN_SECONDS", "10"))
UNKNOWN_LABEL = "unknown"

# Storage
DB_PATH = os.getenv("DB_PATH", "attendance.db")
ATTENDANCE_LOG_LIMIT = int(os.getenv("ATTENDANCE_LOG_LIMIT", "100"))

# Server-side camera
CAMERA_INDEX = int(os.getenv("CAMERA_INDEX", "0"))
DETECTION_SIZE = int(os.getenv("DETECTION_SIZE", "640"))

# HTTP server
HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "3000"))
CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
