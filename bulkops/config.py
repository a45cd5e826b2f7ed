import os
import json
import sys
import tempfile


# Debug flag: default off. Enable via CLI arg "--bulkops-debug" or env BULKOPS_DEBUG=1.
DEBUG = "--bulkops-debug" in sys.argv or os.environ.get("BULKOPS_DEBUG") == "1"


def dlog(label: str, data):
    if not DEBUG:
        return
    try:
        printable = data if isinstance(data, str) else json.dumps(data, indent=2, ensure_ascii=False, default=str)
    except Exception:
        printable = str(data)
    print(f"[bulkops-debug] {label}: {printable}")


def atomic_write_text(path: str, text: str) -> None:
    """Write text to path via temp file + fsync + replace."""
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", delete=False, dir=directory, encoding="utf-8") as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        temp_name = tmp.name
    os.replace(temp_name, path)
