"""Persists Gemini batch manifests in Drive and records batches in the registry sheet."""

import json
import re
from datetime import datetime, timezone
from typing import List, Optional

import config
from config import Settings
from core.models import BatchManifest, BatchRegistryEntry
from services.drive_api import DriveService
from services.sheets_api import SheetsService
from utils.logger import get_logger
from utils.error_handler import APIError, ParseError

logger = get_logger()

MANIFEST_PREFIX = "manifest-"
MANIFEST_MIME_TYPE = "application/json"
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def manifest_file_name(batch_name: str) -> str:
    """'batches/abc 1' -> 'manifest-batches_abc_1.json'"""
    return f"{MANIFEST_PREFIX}{_UNSAFE_NAME_CHARS.sub('_', batch_name)}.json"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ManifestTracker:
    """Stores one JSON manifest per batch job and an append-only registry of batches."""

    def __init__(self, drive: DriveService, sheets: SheetsService, settings: Settings):
        self.drive = drive
        self.sheets = sheets
        self.folder_name = settings.manifests_folder
        self.registry_sheet = settings.batch_registry_sheet

    def _folder_id(self) -> str:
        return self.drive.get_or_create_folder(self.folder_name)

    def save_manifest(self, manifest: BatchManifest) -> str:
        """Writes the manifest.

        A manifest that already has a file id is updated in place, so the id
        recorded in the registry stays valid. Otherwise any file with the same
        name is replaced.

        Returns:
            The Drive file id of the saved manifest.
        """
        if not manifest.batch_name:
            raise ValueError("Cannot save a manifest before its batch job exists")
        name = manifest_file_name(manifest.batch_name)
        if manifest.file_id:
            content = json.dumps(manifest.to_dict(), indent=2)
            self.drive.update_file(manifest.file_id, content, mime_type=MANIFEST_MIME_TYPE)
            logger.info(f"Updated manifest {name} ({manifest.file_id}).")
            return manifest.file_id
        folder_id = self._folder_id()
        for existing in self.drive.find_files(name=name, folder_id=folder_id):
            self.drive.delete_file(existing["id"])
        content = json.dumps(manifest.to_dict(), indent=2)
        created = self.drive.create_file(name, content, mime_type=MANIFEST_MIME_TYPE, folder_id=folder_id)
        manifest.file_id = created["id"]
        logger.info(f"Saved manifest {name} ({len(manifest.rows)} rows).")
        return created["id"]

    def load_manifest(self, file_id: str) -> BatchManifest:
        text = self.drive.read_text(file_id)
        try:
            return BatchManifest.from_dict(json.loads(text), file_id=file_id)
        except (ValueError, KeyError, TypeError) as e:
            raise ParseError(f"Manifest {file_id} is not a valid manifest: {e}", service=DriveService.SERVICE_NAME) from e

    def list_pending_manifests(self) -> List[BatchManifest]:
        """Returns manifests not yet ingested, oldest first. Unreadable manifests are skipped."""
        files = self.drive.find_files(folder_id=self._folder_id(), name_prefix=MANIFEST_PREFIX)
        pending = []
        for item in files:
            try:
                manifest = self.load_manifest(item["id"])
            except APIError as e:
                logger.error(f"Skipping manifest {item.get('name')}: {e}", exc_info=config.DEBUG)
                continue
            if manifest.ingested_at:
                continue
            pending.append(manifest)
        logger.debug(f"{len(pending)} pending manifest(s) out of {len(files)}.")
        return pending

    def mark_consumed(self, manifest: BatchManifest, at: Optional[str] = None) -> str:
        """Sets ingested_at and re-saves, so the manifest is never ingested again."""
        manifest.ingested_at = at or utc_now()
        return self.save_manifest(manifest)

    def track_batch(self, manifest: BatchManifest, manifest_id: str) -> BatchRegistryEntry:
        """Appends one row to the batch registry sheet, creating the sheet on first use."""
        entry = BatchRegistryEntry(
            created_at=manifest.created_at,
            batch_name=manifest.batch_name or "",
            manifest_id=manifest_id,
            row_count=len(manifest.rows),
        )
        self.sheets.ensure_sheet(self.registry_sheet, config.BATCH_REGISTRY_COLUMNS)
        self.sheets.append_row(self.registry_sheet, entry.as_row())
        logger.info(f"Registered batch {entry.batch_name} ({entry.row_count} rows).")
        return entry
