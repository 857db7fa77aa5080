"""
Attachment Ledger - Append-Only Deliverable Files per Task

Records the files attached to each task and which of them are final
deliverable candidates (as opposed to drafts or reference material).

CONSTRAINTS:
- APPEND-ONLY: attachment records are never modified or deleted
- is_final can only go from False to True; marking final appends a
  separate finalize record and is idempotent
- FSYNC: every write is fsync'd before the change event is published

This ledger does NOT:
1. Store file contents (callers upload to blob storage first)
2. Decide who may upload (the role gate does)
"""

import json
import logging
import os
from dataclasses import replace
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple

from .change_feed import ChangeEvent, ChangeEventType, ChangeFeed, ATTACHMENTS_TABLE
from .task_model import Attachment, new_id, utc_now

logger = logging.getLogger("attachment_ledger")

RECORD_ATTACHMENT = "attachment"
RECORD_FINALIZED = "finalized"


class AttachmentLedger:
    """
    Append-only attachment ledger.

    The in-memory index is rebuilt from the JSONL file on start-up by
    replaying attachment and finalize records in order.
    """

    def __init__(
        self,
        ledger_file: Optional[Path] = None,
        change_feed: Optional[ChangeFeed] = None,
    ):
        """
        Initialize ledger.

        Args:
            ledger_file: Path to the JSONL ledger (None keeps it in memory)
            change_feed: Feed that receives committed changes
        """
        self._ledger_file = ledger_file
        self._feed = change_feed
        self._attachments: Dict[str, Attachment] = {}
        self._replay()

    # -------------------------------------------------------------------------
    # Write Operations (Append-Only)
    # -------------------------------------------------------------------------

    async def add_attachment(
        self,
        task_id: str,
        file_url: str,
        file_name: str,
        uploaded_by: str,
        is_final: bool = False,
        file_type: Optional[str] = None,
        file_size: Optional[int] = None,
    ) -> Attachment:
        """
        Record an uploaded file against a task.

        APPEND-ONLY: creates a new record, never modifies an existing one.
        """
        attachment = Attachment(
            id=new_id(),
            task_id=task_id,
            file_url=file_url,
            file_name=file_name,
            uploaded_by=uploaded_by,
            is_final=is_final,
            created_at=utc_now().isoformat(),
            file_type=file_type,
            file_size=file_size,
        )

        self._append_record({"record_type": RECORD_ATTACHMENT, **attachment.to_dict()})
        self._attachments[attachment.id] = attachment

        logger.info(
            f"Attachment {attachment.id} added to task {task_id} by {uploaded_by} "
            f"({'final' if is_final else 'draft'}): {file_name}"
        )
        self._publish(ChangeEventType.INSERT, attachment)
        return attachment

    async def mark_final(self, attachment_id: str) -> Tuple[bool, str]:
        """
        Flag an attachment as a final deliverable.

        Idempotent: marking an already-final attachment succeeds without writing.
        """
        attachment = self._attachments.get(attachment_id)
        if attachment is None:
            return False, f"Attachment '{attachment_id}' not found"
        if attachment.is_final:
            return True, "Attachment already final"

        self._append_record({
            "record_type": RECORD_FINALIZED,
            "attachment_id": attachment_id,
            "finalized_at": utc_now().isoformat(),
        })
        finalized = replace(attachment, is_final=True)
        self._attachments[attachment_id] = finalized

        logger.info(f"Attachment {attachment_id} on task {attachment.task_id} marked final")
        self._publish(ChangeEventType.UPDATE, finalized, old=attachment)
        return True, "Attachment marked final"

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    async def get(self, attachment_id: str) -> Optional[Attachment]:
        return self._attachments.get(attachment_id)

    async def list_for_task(self, task_id: str) -> List[Attachment]:
        """All attachments of a task, oldest first."""
        return [a for a in self._attachments.values() if a.task_id == task_id]

    async def list_final(self, task_id: str) -> List[Attachment]:
        """Final deliverable candidates of a task, oldest first."""
        return [a for a in self._attachments.values() if a.task_id == task_id and a.is_final]

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _publish(self, event_type: ChangeEventType, attachment: Attachment, old: Optional[Attachment] = None) -> None:
        if self._feed is None:
            return
        self._feed.publish(ChangeEvent(
            table=ATTACHMENTS_TABLE,
            event_type=event_type,
            record=attachment.to_dict(),
            old_record=old.to_dict() if old else None,
        ))

    def _append_record(self, record: Dict[str, Any]) -> None:
        """
        Append a record to the JSONL ledger with fsync.
        """
        if self._ledger_file is None:
            return
        self._ledger_file.parent.mkdir(parents=True, exist_ok=True)

        with open(self._ledger_file, "a") as f:
            f.write(json.dumps(record) + "\n")
            f.flush()
            os.fsync(f.fileno())

    def _replay(self) -> None:
        """Rebuild the index from the ledger file."""
        if self._ledger_file is None or not self._ledger_file.exists():
            return

        with open(self._ledger_file, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    # Skip malformed lines
                    continue

                record_type = record.pop("record_type", RECORD_ATTACHMENT)
                if record_type == RECORD_ATTACHMENT:
                    attachment = Attachment.from_dict(record)
                    self._attachments[attachment.id] = attachment
                elif record_type == RECORD_FINALIZED:
                    existing = self._attachments.get(record.get("attachment_id"))
                    if existing is not None:
                        self._attachments[existing.id] = replace(existing, is_final=True)

        logger.info(f"Replayed {len(self._attachments)} attachments from {self._ledger_file}")


logger.info("Attachment Ledger module loaded")
