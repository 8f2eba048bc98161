"""
Audit Logging Module.

This module records every reconciliation decision the engine takes, so that
background operations leave an inspectable trail beyond the log stream.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union

from ..models import AuditRecord

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Append-only audit trail.

    Persists audit records as JSON lines in one file per day.
    """

    def __init__(self, audit_dir: Union[str, Path] = "audit_logs"):
        """
        Initialize the audit logger.

        Args:
            audit_dir: Directory to store audit logs
        """
        self.audit_dir = Path(audit_dir)
        self.audit_dir.mkdir(parents=True, exist_ok=True)

    def record(self, project_id: str, operation: str, success: bool, **fields) -> AuditRecord:
        """Build and log an audit record for an engine operation."""
        record = AuditRecord(
            id=str(uuid.uuid4()),
            project_id=project_id,
            operation=operation,
            success=success,
            **fields,
        )
        self.log_event(record)
        return record

    def log_event(self, record: AuditRecord) -> str:
        """
        Log an audit event.

        Args:
            record: The audit record to log

        Returns:
            The record ID
        """
        try:
            date_str = datetime.now(timezone.utc).strftime("%Y-%m-%d")
            log_file = self.audit_dir / f"audit_{date_str}.jsonl"

            with open(log_file, "a", encoding="utf-8") as f:
                data = record.model_dump(mode="json")
                f.write(json.dumps(data) + "\n")

            logger.info(f"Logged audit event {record.id}: {record.operation} in {record.project_id}")
            return record.id

        except OSError as e:
            logger.error(f"Failed to log audit event: {e}")
            raise

    def get_events(
        self,
        project_id: Optional[str] = None,
        account_id: Optional[str] = None,
        operation: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditRecord]:
        """
        Retrieve audit events with filtering, most recent first.

        Args:
            project_id: Filter by project ID
            account_id: Filter by internal account ID
            operation: Filter by engine operation
            limit: Maximum number of records to return

        Returns:
            List of matching AuditRecords
        """
        results = []

        log_files = sorted(self.audit_dir.glob("audit_*.jsonl"), reverse=True)

        for log_file in log_files:
            if len(results) >= limit:
                break

            with open(log_file, encoding="utf-8") as f:
                lines = f.readlines()

            for line in reversed(lines):
                if len(results) >= limit:
                    break

                try:
                    record = AuditRecord(**json.loads(line))
                except ValueError as e:
                    logger.warning(f"Failed to parse audit record: {e}")
                    continue

                if project_id and record.project_id != project_id:
                    continue
                if account_id and record.account_id != account_id:
                    continue
                if operation and record.operation != operation:
                    continue

                results.append(record)

        return results
