"""Utility functions for backup/restore operations."""

import hashlib
import json
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional
from datetime import datetime, timezone

from .._utils import logger

RUN_ID_FORMAT = "%Y%m%d_%H%M%S"
RUN_ID_PATTERN = re.compile(r"^(\d{8}_\d{6})(?:_(\d+))?$")

MANIFEST_FILENAME = "manifest.json"
SUMMARY_FILENAME = "summary.json"
SUMMARY_TEXT_FILENAME = "summary.txt"
PARTIAL_SUFFIX = ".partial"
LOCK_DIR_NAME = ".locks"


def compute_checksum(file_path: Path) -> str:
    """Compute SHA-256 checksum of file.

    Args:
        file_path: Path to file

    Returns:
        SHA-256 checksum as hex string with 'sha256:' prefix
    """
    sha256 = hashlib.sha256()

    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            sha256.update(chunk)

    return f"sha256:{sha256.hexdigest()}"


def verify_checksum(file_path: Path, expected_checksum: str) -> bool:
    """Verify file checksum.

    Args:
        file_path: Path to file
        expected_checksum: Expected checksum (with 'sha256:' prefix)

    Returns:
        True if checksum matches, False otherwise
    """
    return compute_checksum(file_path) == expected_checksum


def generate_run_id(now: Optional[datetime] = None) -> str:
    """Generate a sortable run ID from a UTC timestamp.

    Returns:
        Run ID in format: YYYYMMDD_HHMMSS
    """
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime(RUN_ID_FORMAT)


def parse_run_id(run_id: str) -> Optional[datetime]:
    """Extract the UTC timestamp from a run ID.

    Accepts an optional numeric collision suffix (20240115_030000_1).

    Returns:
        Timezone-aware datetime, or None if run_id is not a run ID
    """
    match = RUN_ID_PATTERN.match(run_id)
    if not match:
        return None
    try:
        parsed = datetime.strptime(match.group(1), RUN_ID_FORMAT)
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)


def run_sort_key(run_id: str):
    """Sort key ordering run IDs by timestamp, then collision suffix."""
    match = RUN_ID_PATTERN.match(run_id)
    if not match:
        return (run_id, -1)
    return (match.group(1), int(match.group(2) or 0))


def write_json_atomic(data: Dict[str, Any], output_path: Path) -> None:
    """Write JSON through a temporary file and rename it into place."""
    tmp_path = output_path.with_name(output_path.name + PARTIAL_SUFFIX)
    with open(tmp_path, "w") as f:
        json.dump(data, f, indent=2, default=str)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, output_path)


def save_manifest(manifest: Dict[str, Any], output_path: Path) -> None:
    """Save manifest JSON to file.

    Args:
        manifest: Manifest dictionary
        output_path: Output file path
    """
    write_json_atomic(manifest, output_path)
    logger.debug(f"Manifest saved: {output_path}")


def load_manifest(manifest_path: Path) -> Dict[str, Any]:
    """Load manifest JSON from file.

    Args:
        manifest_path: Manifest file path

    Returns:
        Manifest dictionary
    """
    with open(manifest_path, "r") as f:
        manifest = json.load(f)

    logger.debug(f"Manifest loaded: {manifest_path}")
    return manifest


def render_summary_text(summary: Dict[str, Any]) -> str:
    """Operator-readable run summary."""
    lines = [
        "WPFleet Backup Summary",
        "=====================",
        f"Run: {summary['run_id']}",
        f"Date: {summary['completed_at']}",
        f"Sites backed up: {summary['succeeded']} of {summary['attempted']}",
        f"Failed: {summary['failed']}",
        f"Total size: {summary['total_size']}",
        "",
        "Sites:",
    ]
    for tenant in summary.get("tenants", []):
        status = "ok" if tenant["success"] else "FAILED"
        lines.append(f"  - {tenant['domain']} ({status})")
        for kind, error in tenant.get("errors", {}).items():
            lines.append(f"      {kind}: {error}")
    if summary.get("skipped"):
        lines.append("")
        lines.append("Skipped (cancelled):")
        lines.extend(f"  - {domain}" for domain in summary["skipped"])
    return "\n".join(lines) + "\n"


def save_summary(summary: Dict[str, Any], run_dir: Path) -> Path:
    """Write the run summary; summary.json is written last as the completion marker."""
    text_path = run_dir / SUMMARY_TEXT_FILENAME
    text_path.write_text(render_summary_text(summary))

    summary_path = run_dir / SUMMARY_FILENAME
    write_json_atomic(summary, summary_path)
    logger.debug(f"Summary saved: {summary_path}")
    return summary_path
