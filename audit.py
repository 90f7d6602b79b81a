import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from models import AuditLog


logger = logging.getLogger(__name__)

# Record id used for audit entries that summarize a whole batch.
BATCH_RECORD_ID = "00000000-0000-0000-0000-000000000000"


def record_audit(
    session: Session,
    *,
    ledger_id: str,
    table_name: str,
    record_id: str,
    action: str,
    actor_id: Optional[str],
    before_data: Optional[dict[str, Any]] = None,
    after_data: Optional[dict[str, Any]] = None,
) -> AuditLog:
    entry = AuditLog(
        ledger_id=ledger_id,
        table_name=table_name,
        record_id=record_id,
        action=action,
        actor_id=actor_id,
        before_data=before_data,
        after_data=after_data,
    )
    session.add(entry)
    session.flush()
    logger.info(
        f"audit: ledger={ledger_id} table={table_name} action={action} "
        f"record={record_id}"
    )
    return entry
