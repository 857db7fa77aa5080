"""
Comment Log - Append-Only Comment Threads per Task

Comments are never edited or deleted by this core. Each new comment is
published on the task_comments table so open task views refresh.
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional, Dict, Any, List

from .change_feed import ChangeEvent, ChangeEventType, ChangeFeed, COMMENTS_TABLE
from .task_model import Comment, new_id, utc_now

logger = logging.getLogger("comment_log")


class CommentLog:
    """Append-only comment threads."""

    def __init__(
        self,
        log_file: Optional[Path] = None,
        change_feed: Optional[ChangeFeed] = None,
    ):
        self._log_file = log_file
        self._feed = change_feed
        self._comments: List[Comment] = []
        self._load()

    async def add_comment(self, task_id: str, user_id: str, content: str) -> Comment:
        """Append a comment. Raises ValueError on empty content."""
        comment = Comment(
            id=new_id(),
            task_id=task_id,
            user_id=user_id,
            content=content.strip(),
            created_at=utc_now().isoformat(),
        )
        self._append_record(comment.to_dict())
        self._comments.append(comment)

        logger.info(f"Comment {comment.id} added to task {task_id} by {user_id}")
        if self._feed is not None:
            self._feed.publish(ChangeEvent(
                table=COMMENTS_TABLE,
                event_type=ChangeEventType.INSERT,
                record=comment.to_dict(),
            ))
        return comment

    async def list_for_task(self, task_id: str, limit: int = 200) -> List[Comment]:
        """Comments of a task, oldest first."""
        comments = [c for c in self._comments if c.task_id == task_id]
        return comments[-limit:]

    def _append_record(self, record: Dict[str, Any]) -> None:
        if self._log_file is None:
            return
        self._log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self._log_file, "a") as f:
            f.write(json.dumps(record) + "\n")
            f.flush()
            os.fsync(f.fileno())

    def _load(self) -> None:
        if self._log_file is None or not self._log_file.exists():
            return
        with open(self._log_file, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    self._comments.append(Comment.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    logger.warning(f"Skipping malformed comment record: {e}")


logger.info("Comment Log module loaded")
