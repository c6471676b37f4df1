import os
import sys
import tempfile
from pathlib import Path

# The backend binds its engine at import time, so point it at a scratch
# database before any test module imports it.
_DB_DIR = tempfile.mkdtemp(prefix="clip-overlay-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_DB_DIR}/test.sqlite")
os.environ.setdefault("ADMIN_TOKEN", "admin-secret")

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
