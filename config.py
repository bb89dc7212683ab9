"""
Case Document Generator Configuration
"""
import os
from pathlib import Path

from dotenv import dotenv_values

# Load environment variables from .env file
_env_path = Path(__file__).parent / ".env"
if _env_path.exists():
    for key, value in dotenv_values(_env_path).items():
        if value and not os.environ.get(key):  # Set if value exists and env not already set
            os.environ[key] = value

# Base paths
BASE_DIR = Path(__file__).parent
DATA_DIR = Path(os.getenv("CASEGEN_DATA_DIR", str(BASE_DIR / "data")))
BLOB_DIR = DATA_DIR / "blobs"
OUTPUT_DIR = DATA_DIR / "generated"
LOGS_DIR = DATA_DIR / "logs"

# Ensure directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)
BLOB_DIR.mkdir(exist_ok=True)
OUTPUT_DIR.mkdir(exist_ok=True)
LOGS_DIR.mkdir(exist_ok=True)

# Record store
DB_FILE = DATA_DIR / "casegen.db"

# Remote template storage (Supabase-style storage API). Local BLOB_DIR is used when unset.
STORAGE_URL = os.getenv("CASEGEN_STORAGE_URL", "")
STORAGE_BUCKET = os.getenv("CASEGEN_STORAGE_BUCKET", "document-templates")
STORAGE_API_KEY = os.getenv("CASEGEN_STORAGE_API_KEY", "")
HTTP_TIMEOUT = float(os.getenv("CASEGEN_HTTP_TIMEOUT", "30"))

# Generation context: locale date for {{date.today}} (Polish offices expect DD.MM.YYYY)
DATE_FORMAT = os.getenv("CASEGEN_DATE_FORMAT", "%d.%m.%Y")

# Logging
LOG_LEVEL = os.getenv("CASEGEN_LOG_LEVEL", "INFO")
