import json
import os
import re
import sys
from datetime import datetime
from typing import Any, Dict

def log_error(message: str) -> None:
    print(f"[ipc-session] {message}", file=sys.stderr, flush=True)

def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")

def safe_name(text: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "_", text.strip())
    return cleaned[:80] if cleaned else "unnamed"

def json_line(path: str, payload: Dict[str, Any]) -> None:
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
    except Exception as exc:
        log_error(f"log write failed ({path}): {exc}")

def session_log_path(log_dir: str, name: str) -> str:
    os.makedirs(log_dir, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filename = f"session__{safe_name(name)}__{stamp}__{os.getpid()}.log"
    return os.path.join(log_dir, filename)
