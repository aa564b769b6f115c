"""
Trade ledger fold.

Keeps one TradeRecord per engine trade id and labels each with a display
sequence number the first time it is seen. The counter lives on the ledger
itself and only the functions in this module advance it.
"""

import bisect
import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from .envelopes import WireTrade
from .models import TradeAction, TradeRecord, TradeSide, TradeStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradeLedger:
    """Trades ordered by open time, plus the last display sequence issued."""
    trades: Tuple[TradeRecord, ...] = ()
    last_seq: int = 0
    by_id: Dict[str, TradeRecord] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self):
        if len(self.by_id) != len(self.trades):
            object.__setattr__(self, "by_id", {record.server_id: record for record in self.trades})

    def __len__(self) -> int:
        return len(self.trades)

    def get(self, server_id: str) -> Optional[TradeRecord]:
        return self.by_id.get(server_id)

    @property
    def labels(self) -> Dict[str, int]:
        return {record.server_id: record.display_seq for record in self.trades}

    @property
    def open_trades(self) -> Tuple[TradeRecord, ...]:
        return tuple(t for t in self.trades if not t.is_closed)

    @property
    def closed_trades(self) -> Tuple[TradeRecord, ...]:
        return tuple(t for t in self.trades if t.is_closed)


def _order(record: TradeRecord) -> Tuple[int, int]:
    return (record.open_time, record.display_seq)


def _sorted(records) -> Tuple[TradeRecord, ...]:
    return tuple(sorted(records, key=_order))


def _insert(trades: Tuple[TradeRecord, ...], record: TradeRecord) -> Tuple[TradeRecord, ...]:
    index = bisect.bisect_right(trades, _order(record), key=_order)
    return trades[:index] + (record,) + trades[index:]


def _new_record(display_seq: int, trade: WireTrade, closed: bool) -> Optional[TradeRecord]:
    if trade.entry_price is None:
        logger.warning(f"Trade {trade.id} has no entry price, skipping")
        return None

    open_time = trade.open_time
    if open_time is None:
        open_time = trade.close_time if trade.close_time is not None else 0

    return TradeRecord(
        display_seq=display_seq,
        server_id=trade.id,
        open_time=open_time,
        close_time=trade.close_time if closed else None,
        instrument=trade.instrument,
        side=trade.side or TradeSide.LONG,
        entry_price=trade.entry_price,
        exit_price=trade.close_price if closed else None,
        stop_loss=trade.stop_loss,
        take_profit=trade.take_profit,
        quantity=trade.quantity if trade.quantity is not None else 0.0,
        profit=trade.profit,
        status=TradeStatus.CLOSED if closed else TradeStatus.OPEN,
    )


def _merge(record: TradeRecord, trade: WireTrade, action: TradeAction) -> TradeRecord:
    update = {}

    if trade.profit is not None:
        update["profit"] = trade.profit

    if record.is_closed:
        # Closing fields are frozen; a late event can only refresh profit
        return record.model_copy(update=update) if update else record

    if action == TradeAction.UPDATE:
        if trade.close_price is not None:
            update["exit_price"] = trade.close_price
        if trade.close_time is not None:
            update["close_time"] = trade.close_time
        return record.model_copy(update=update) if update else record

    for field, value in (
        ("open_time", trade.open_time),
        ("instrument", trade.instrument),
        ("side", trade.side),
        ("entry_price", trade.entry_price),
        ("stop_loss", trade.stop_loss),
        ("take_profit", trade.take_profit),
        ("quantity", trade.quantity),
    ):
        if value is not None:
            update[field] = value

    if action == TradeAction.CLOSE:
        update["status"] = TradeStatus.CLOSED
        if trade.close_price is not None:
            update["exit_price"] = trade.close_price
        if trade.close_time is not None:
            update["close_time"] = trade.close_time

    return record.model_copy(update=update)


def apply_trade(ledger: TradeLedger, trade: WireTrade, action: TradeAction) -> TradeLedger:
    """
    Fold a single TRADE event into the ledger.

    Args:
        ledger: Current ledger
        trade: Trade payload from the envelope
        action: OPEN, CLOSE or UPDATE

    Returns:
        The new ledger (the same object when nothing changed)
    """
    existing = ledger.get(trade.id)

    if existing is None:
        if action == TradeAction.UPDATE:
            logger.debug(f"Ignoring UPDATE for unknown trade {trade.id}")
            return ledger
        seq = ledger.last_seq + 1
        record = _new_record(seq, trade, closed=(action == TradeAction.CLOSE))
        if record is None:
            return ledger
        logger.debug(f"Trade {trade.id} labelled #{seq} ({action.value})")
        by_id = dict(ledger.by_id)
        by_id[record.server_id] = record
        return TradeLedger(trades=_insert(ledger.trades, record), last_seq=seq, by_id=by_id)

    merged = _merge(existing, trade, action)
    if merged is existing:
        return ledger

    trades = ledger.trades
    index = bisect.bisect_left(trades, _order(existing), key=_order)
    if _order(merged) == _order(existing):
        trades = trades[:index] + (merged,) + trades[index + 1:]
    else:
        trades = _insert(trades[:index] + trades[index + 1:], merged)
    by_id = dict(ledger.by_id)
    by_id[merged.server_id] = merged
    return TradeLedger(trades=trades, last_seq=ledger.last_seq, by_id=by_id)


def apply_all_trades(ledger: TradeLedger, trades: Mapping[str, WireTrade]) -> TradeLedger:
    """
    Replace the ledger with a full snapshot of trades.

    Trade ids already in the ledger keep their display sequence; new ids are
    labelled in open-time order starting after the last issued sequence, so
    labels are never reused across replacements.
    """
    labels = ledger.labels
    counter = ledger.last_seq

    batch = sorted(
        trades.values(),
        key=lambda t: t.open_time if t.open_time is not None else (t.close_time or 0),
    )

    records = []
    for trade in batch:
        seq = labels.get(trade.id)
        record = _new_record(seq if seq is not None else counter + 1, trade, closed=trade.close_time is not None)
        if record is None:
            continue
        if seq is None:
            counter += 1
        if record.profit is not None:
            record = record.model_copy(update={"profit": round(record.profit, 2)})
        records.append(record)

    last_seq = max([counter] + [r.display_seq for r in records])
    logger.debug(f"Replaced ledger with {len(records)} trades (last label #{last_seq})")
    return TradeLedger(trades=_sorted(records), last_seq=last_seq)
