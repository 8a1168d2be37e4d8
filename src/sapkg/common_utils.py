from __future__ import annotations  # Python 3.6+ compatibility

import json
import os
import subprocess
import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, List, Optional

# Keep a reference to the original, built-in print function
_builtin_print = print


def safe_print(*args, **kwargs):
    """
    Ultra-robust print: Handles Windows encoding issues and prevents shell crashes.
    Detects non-UTF8 sessions (like cp1252) and strips emojis to prevent mojibake.
    """
    if "flush" not in kwargs:
        kwargs["flush"] = True
    try:
        _builtin_print(*args, **kwargs)
    except UnicodeEncodeError:
        try:
            safe_args = []
            stream = kwargs.get("file") or sys.stdout
            encoding = getattr(stream, "encoding", None) or "utf-8"
            for arg in args:
                if isinstance(arg, str):
                    # If shell is not UTF-8, strip problematic symbols
                    if sys.platform == "win32" and encoding.lower() not in [
                        "utf-8",
                        "utf8",
                    ]:
                        import unicodedata

                        arg = "".join(
                            (c if ord(c) < 128 or unicodedata.category(c)[0] != "S" else "?")
                            for c in arg
                        )
                    safe_args.append(arg.encode(encoding, "replace").decode(encoding))
                else:
                    safe_args.append(arg)
            _builtin_print(*safe_args, **kwargs)
        except Exception:
            _builtin_print("[sapkg: Encoding Error - Shell might not support UTF-8]", flush=True)


def safe_unlink(path: Path) -> bool:
    """Unlink that ignores missing files. Returns True if a file was removed."""
    try:
        Path(path).unlink()
        return True
    except FileNotFoundError:
        return False


def format_size(num_bytes: int) -> str:
    """Human readable byte count (MB granularity like `sa cache stats`)."""
    return f"{num_bytes / 1024.0 / 1024.0:.2f} MB"


def atomic_write_json(path: Path, data: Any) -> None:
    """
    Writes JSON to `path` through a temp file in the same directory and an
    os.replace, so readers never observe a half-written file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(suffix=".json", prefix=f".{path.stem}_", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(temp_path, path)
    except BaseException:
        safe_unlink(Path(temp_path))
        raise


def stream_subprocess(
    cmd: List[str],
    on_output: Optional[Callable[[str], None]] = None,
    timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    env: Optional[dict] = None,
    cwd: Optional[str] = None,
) -> tuple[int, str]:
    """
    Standardized subprocess call that handles:
    - Unicode output on every platform
    - Real-time output streaming (stdout and stderr merged)
    - Timeout and cooperative cancellation

    Args:
        cmd: Command list (e.g., ['docker', 'build', ...])
        on_output: Called once per output line as it is produced
        timeout: Optional timeout in seconds; the process is killed when exceeded
        cancel_event: When set, the process is terminated
        env: Optional environment for the child
        cwd: Optional working directory

    Returns:
        (returncode, combined_output). returncode is -1 on timeout or cancellation.
    """
    process = subprocess.Popen(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        encoding="utf-8",
        errors="replace",  # Replace bad chars with ?
        bufsize=1,
        env=env,
        cwd=cwd,
    )

    killed = threading.Event()

    def _watchdog():
        # Wakes up every 100ms to honour cancellation; gives up at the deadline.
        waited = 0.0
        while process.poll() is None:
            if cancel_event is not None and cancel_event.is_set():
                break
            if timeout is not None and waited >= timeout:
                break
            time.sleep(0.1)
            waited += 0.1
        if process.poll() is None:
            killed.set()
            process.kill()

    watcher = threading.Thread(target=_watchdog, daemon=True)
    watcher.start()

    output_lines = []
    try:
        for line in process.stdout:
            line = line.rstrip("\n")
            output_lines.append(line)
            if on_output is not None and line:
                on_output(line)
        returncode = process.wait()
    finally:
        if process.stdout:
            process.stdout.close()
        watcher.join(timeout=1.0)

    if killed.is_set():
        returncode = -1
    return returncode, "\n".join(output_lines)
