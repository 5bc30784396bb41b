from __future__ import annotations

import logging
import time
from typing import Callable, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from resource_office.config import status_poll_interval_seconds
from resource_office.models.inventory_models import ReturnVerification

LOGGER = logging.getLogger("resource_office.status")


def check_status(db: Session, verification_ids: Iterable[int]) -> dict:
    """Summarize the current state of a client-held set of verifications.

    Read only. Unknown ids are ignored; an empty result is never ``allVerified``.
    """
    ids = sorted({int(value) for value in verification_ids or []})
    rows = []
    if ids:
        rows = db.execute(
            select(
                ReturnVerification.VerificationID,
                ReturnVerification.VerificationNumber,
                ReturnVerification.TransactionID,
                ReturnVerification.ItemID,
                ReturnVerification.Quantity,
                ReturnVerification.Status,
                ReturnVerification.ConditionNotes,
                ReturnVerification.ResolvedAt,
            )
            .where(ReturnVerification.VerificationID.in_(ids))
            .order_by(ReturnVerification.VerificationID)
        ).all()

    verifications = [
        {
            "verificationID": row.VerificationID,
            "verificationNumber": row.VerificationNumber,
            "transactionID": row.TransactionID,
            "itemID": row.ItemID,
            "quantity": row.Quantity,
            "status": row.Status,
            "conditionNotes": row.ConditionNotes,
            "resolvedAt": row.ResolvedAt,
        }
        for row in rows
    ]
    verified_count = sum(1 for v in verifications if v["status"] == "Verified")
    rejected_count = sum(1 for v in verifications if v["status"] == "Rejected")
    total = len(verifications)
    all_verified = total > 0 and verified_count == total
    any_rejected = rejected_count > 0
    return {
        "verifications": verifications,
        "allVerified": all_verified,
        "anyRejected": any_rejected,
        "canClose": all_verified or any_rejected,
        "verifiedCount": verified_count,
        "rejectedCount": rejected_count,
        "pendingCount": total - verified_count - rejected_count,
        "totalCount": total,
        "missingIDs": sorted(set(ids) - {v["verificationID"] for v in verifications}),
    }


def poll_verification_status(
    fetch_status: Callable[[list[int]], dict],
    verification_ids: list[int],
    interval_seconds: float | None = None,
    timeout_seconds: float | None = 300.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> dict:
    """Poll ``fetch_status`` at a fixed interval until the batch can close.

    Returns the last summary seen; ``timedOut`` is set when the deadline passed
    before ``canClose``.
    """
    interval = interval_seconds if interval_seconds is not None else status_poll_interval_seconds()
    deadline = clock() + timeout_seconds if timeout_seconds is not None else None
    attempts = 0
    while True:
        attempts += 1
        summary = dict(fetch_status(list(verification_ids)))
        if summary.get("canClose"):
            summary["timedOut"] = False
            summary["attempts"] = attempts
            return summary
        if deadline is not None and clock() + interval > deadline:
            LOGGER.info("Status polling timed out ids=%s attempts=%s", verification_ids, attempts)
            summary["timedOut"] = True
            summary["attempts"] = attempts
            return summary
        sleep(interval)
