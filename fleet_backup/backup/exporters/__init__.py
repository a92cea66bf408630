"""Data source exporters for backup/restore operations."""

from .base import DatabaseExporter
from .mysql_exporter import MySQLDumpExporter
from .archive_exporter import ArchiveExporter

__all__ = ["DatabaseExporter", "MySQLDumpExporter", "ArchiveExporter"]
