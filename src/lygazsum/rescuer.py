from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from .config import Config
from .state_machine import RetryLimits, rescue_transition
from .storage import apply_rescue_transition, list_stuck_contents
from .utils import log_event, to_iso, utc_now
from .worker import record_run

JOB_NAME_RESCUER = "rescue-stuck-analyses"


@dataclass
class RescueSummary:
    found: int = 0
    rescued: int = 0
    failed_to_rescue: int = 0
    lease_changed: int = 0
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return not self.errors

    def message(self) -> str:
        if self.found == 0 and not self.errors:
            return f"No stuck records found. Duration: {self.duration_seconds:.2f}s."
        text = (
            f"Found {self.found} stuck record(s). Rescued {self.rescued}, "
            f"failed to rescue {self.failed_to_rescue}, {self.lease_changed} finished concurrently."
        )
        if self.errors:
            text += f" Encountered {len(self.errors)} error(s)."
        return text + f" Duration: {self.duration_seconds:.2f}s."

    def to_payload(self) -> dict[str, object]:
        return {
            "success": self.success,
            "message": self.message(),
            "details": {
                "found": self.found,
                "rescued": self.rescued,
                "failedToRescue": self.failed_to_rescue,
                "leaseChanged": self.lease_changed,
            },
            "errors": list(self.errors),
        }


def rescue_stuck_analyses(
    conn: Any,
    config: Config,
    logger: logging.Logger,
    *,
    now: datetime | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RescueSummary:
    """Return records whose lease outlived the stuck threshold to the retry rotation.

    The analyzer is never called. Each reset counts as one failed attempt and is
    written only if the lease is still the one that was read.
    """
    summary = RescueSummary()
    started = time.monotonic()
    now = now or utc_now()
    limits = RetryLimits.from_config(config.analysis)
    threshold = to_iso(now - timedelta(minutes=config.rescue.stuck_threshold_minutes))
    log_event(
        logger,
        logging.INFO,
        "rescue_run_start",
        started_before=threshold,
        limit=config.rescue.limit_per_run,
    )

    try:
        records = list_stuck_contents(
            conn, started_before=threshold, limit=config.rescue.limit_per_run
        )
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "stuck_query_failed", error=str(exc))
        summary.errors.append(f"DB fetch error: {exc}")
        records = []
    summary.found = len(records)

    delay_seconds = config.rescue.inter_record_delay_ms / 1000
    for index, record in enumerate(records):
        try:
            transition = rescue_transition(record, limits)
            applied = apply_rescue_transition(
                conn,
                record.id,
                record.status,
                record.processing_started_at or "",
                transition,
            )
        except Exception as exc:  # noqa: BLE001
            summary.failed_to_rescue += 1
            summary.errors.append(f"Failed to reset status for ID {record.id}: {exc}")
            log_event(
                logger,
                logging.ERROR,
                "rescue_failed",
                content_id=record.id,
                error=str(exc),
            )
        else:
            if applied:
                summary.rescued += 1
                log_event(
                    logger,
                    logging.INFO,
                    "content_rescued",
                    content_id=record.id,
                    from_status=record.status.value,
                    to_status=transition.status.value,
                    attempts=transition.analysis_attempts,
                    shortened_attempts=transition.shortened_analysis_attempts,
                    error_type=transition.error_type.value,
                )
            else:
                summary.lease_changed += 1
                log_event(
                    logger,
                    logging.INFO,
                    "rescue_lease_changed",
                    content_id=record.id,
                    lease=record.processing_started_at,
                )
        if index < len(records) - 1 and delay_seconds > 0:
            sleep(delay_seconds)

    summary.duration_seconds = time.monotonic() - started
    record_run(conn, JOB_NAME_RESCUER, summary.to_payload(), logger)
    log_event(
        logger,
        logging.INFO,
        "rescue_run_finished",
        found=summary.found,
        rescued=summary.rescued,
        failed_to_rescue=summary.failed_to_rescue,
        lease_changed=summary.lease_changed,
    )
    return summary
