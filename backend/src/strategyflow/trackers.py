"""
Latest-value folds for account, analysis and progress, plus the bounded log sink.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from .envelopes import AccountEnvelope, AnalysisEnvelope, LogEnvelope, ProgressEnvelope
from .models import AccountSnapshot, AnalysisReport, LogEntry, LogLevel, ProgressInfo

logger = logging.getLogger(__name__)


def apply_account(current: Optional[AccountSnapshot], envelope: AccountEnvelope) -> AccountSnapshot:
    """ACCOUNT and ASYNC_ACCOUNT both overwrite the snapshot."""
    return envelope.account.to_snapshot()


def apply_analysis(current: Optional[AnalysisReport], envelope: AnalysisEnvelope) -> AnalysisReport:
    """Replace the report and its equity history as one unit."""
    report = envelope.to_report()
    logger.debug(f"{report.kind} report with {len(report.equity_history)} equity points")
    return report


@dataclass(frozen=True)
class LogBuffer:
    """Log entries, newest first. ``limit`` of 0 keeps everything."""
    entries: Tuple[LogEntry, ...] = ()
    limit: int = 0

    def __len__(self) -> int:
        return len(self.entries)

    def by_level(self, level: LogLevel) -> Tuple[LogEntry, ...]:
        return tuple(e for e in self.entries if e.level == level)


def apply_log(buffer: LogBuffer, envelope: LogEnvelope) -> LogBuffer:
    entries = (envelope.to_entry(),) + buffer.entries
    if buffer.limit > 0 and len(entries) > buffer.limit:
        entries = entries[:buffer.limit]
    return LogBuffer(entries=entries, limit=buffer.limit)


def apply_progress(current: Optional[ProgressInfo], envelope: ProgressEnvelope) -> ProgressInfo:
    return envelope.to_progress()
