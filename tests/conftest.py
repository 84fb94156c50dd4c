# tests/conftest.py
import os, sys, pathlib

# Quiet by default; override with LOG_LEVEL=DEBUG
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Add <repo>/src to sys.path so `import devenv...` works under pytest
ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
