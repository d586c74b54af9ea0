"""
Audit Log Service
Append-only record of privileged, state-changing actions with a structured
log mirror for log shipping.
"""
import enum
import json
import logging
import logging.handlers
import os
from datetime import datetime
from typing import Optional, Dict, Any

from database import db
from models import AuditLogEntry


class AuditAction(enum.Enum):
    JOB_HIDDEN = 'JOB_HIDDEN'
    JOB_UNHIDDEN = 'JOB_UNHIDDEN'
    ESCROW_HELD = 'ESCROW_HELD'
    ESCROW_RELEASED = 'ESCROW_RELEASED'
    ESCROW_REFUNDED = 'ESCROW_REFUNDED'
    ESCROW_DISPUTE_REJECTED = 'ESCROW_DISPUTE_REJECTED'


def setup_audit_file_logging(log_dir):
    """Configure JSON-lines output for the audit logger with file rotation"""
    os.makedirs(log_dir, exist_ok=True)

    audit_logger = logging.getLogger('audit')
    audit_logger.setLevel(logging.INFO)

    json_formatter = logging.Formatter(
        '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "message": %(message)s}'
    )

    # 50MB per file, keep 10 backups
    file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, 'audit.log'),
        maxBytes=50 * 1024 * 1024,
        backupCount=10,
        encoding='utf-8'
    )
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(json_formatter)
    audit_logger.addHandler(file_handler)
    return audit_logger


class AuditLog:
    """
    Writes one AuditLogEntry per privileged action.

    ``record`` only adds the entry to the current session so that it commits
    or rolls back together with the state change it describes.
    """

    def __init__(self):
        self.logger = logging.getLogger('audit')

    def record(
        self,
        actor_id: int,
        action: AuditAction,
        entity_type: str,
        entity_id: Optional[Any] = None,
        metadata: Optional[Dict] = None
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            actor_id=actor_id,
            action=action.value,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            meta=metadata or None
        )
        db.session.add(entry)

        self.logger.info(json.dumps({
            'actor_id': actor_id,
            'action': action.value,
            'entity_type': entity_type,
            'entity_id': entry.entity_id,
            'metadata': metadata
        }, default=str))
        return entry

    def query(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[Any] = None,
        actor_id: Optional[int] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100
    ):
        """Audit entries filtered by entity, actor or time range, newest first"""
        q = AuditLogEntry.query
        if entity_type:
            q = q.filter(AuditLogEntry.entity_type == entity_type)
        if entity_id is not None:
            q = q.filter(AuditLogEntry.entity_id == str(entity_id))
        if actor_id is not None:
            q = q.filter(AuditLogEntry.actor_id == actor_id)
        if since:
            q = q.filter(AuditLogEntry.created_at >= since)
        if until:
            q = q.filter(AuditLogEntry.created_at <= until)
        return q.order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc()).limit(min(limit, 500)).all()
