import asyncio
import logging
from pathlib import Path
from typing import List, Tuple

logger = logging.getLogger("fleet-backup")


def human_size(num_bytes: int) -> str:
    """Format a byte count the way `du -h` does (1K, 2.5M, 3.1G)."""
    if num_bytes < 1024:
        return f"{num_bytes}B"
    size = float(num_bytes)
    for unit in ["K", "M", "G", "T"]:
        size /= 1024.0
        if size < 1024 or unit == "T":
            break
    if size < 10:
        return f"{size:.1f}{unit}"
    return f"{size:.0f}{unit}"


def directory_size(path: Path) -> int:
    """Total size in bytes of all regular files below path."""
    if not path.exists():
        return 0
    if path.is_file():
        return path.stat().st_size
    return sum(f.stat().st_size for f in path.rglob("*") if f.is_file())


async def run_command(args: List[str], timeout: float) -> Tuple[int, str, str]:
    """Run a short command and capture its output.

    Raises:
        FileNotFoundError: If the executable does not exist
        asyncio.TimeoutError: If the command outlives timeout (it is killed)
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    finally:
        if process.returncode is None:
            process.kill()
            await process.wait()
    return (
        process.returncode,
        stdout.decode(errors="replace").strip(),
        stderr.decode(errors="replace").strip(),
    )
