import subprocess
from typing import Optional


def run_command(command: str, input: Optional[str] = None, timeout: Optional[int] = None) -> tuple[int, str]:
    """
    Executes shell command with `input` on stdin. Returns (returncode, stderr_or_empty).
    """
    try:
        r = subprocess.run(command, shell=True, input=input or "", capture_output=True, text=True, timeout=timeout)
        err = (r.stderr or "").strip()
        return r.returncode, err
    except (OSError, subprocess.SubprocessError) as e:
        return 1, f"exception: {e}"
