import sys
from pathlib import Path


def pytest_configure():
    # Ensure `src/` is on sys.path so `import mcprelay` works without an editable install,
    # and the tests dir so `fixtures.*` helpers import.
    root = Path(__file__).resolve().parent.parent
    for path in (root / "src", root / "tests"):
        if path.exists():
            p = str(path)
            if p not in sys.path:
                sys.path.insert(0, p)
