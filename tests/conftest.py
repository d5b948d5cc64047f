"""Pytest configuration: makes `docpool` and `tests.*` importable from a checkout."""

import sys
from pathlib import Path

# Ensure the project root is in sys.path so tests can import tests.fakes
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))
