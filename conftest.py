"""Root conftest: repo root on sys.path, dummy credentials before any agent is built."""

import os
import sys
from pathlib import Path

os.environ.setdefault("GEMINI_API_KEY", "test-key-for-tests")
os.environ.setdefault("GOOGLE_API_KEY", "test-key-for-tests")

repo_root = str(Path(__file__).resolve().parent)
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)
