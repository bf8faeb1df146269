"""Incremental ERC-20 Transfer scanner for the custodial address.

The scanner owns a persisted cursor: the last block whose transfers were fully
handed off. A scan must start exactly at `cursor + 1`, and the cursor moves
only after the chunk's handler returns, so a crash mid-range rescans that
chunk instead of skipping it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from core.deposits.chain import ChainClient, TransferLog
from core.persistence.interfaces import CursorStore
from core.types import TransferEvent

logger = logging.getLogger(__name__)

ChunkHandler = Callable[[list[TransferEvent], int], None]


class CursorGapError(ValueError):
    """Requested range does not start right after the persisted cursor."""


@dataclass(frozen=True)
class ScanResult:
    from_block: int
    to_block: int
    events: tuple[TransferEvent, ...]

    @property
    def is_empty(self) -> bool:
        return self.from_block > self.to_block


def to_token_amount(value: int, decimals: int) -> Decimal:
    return Decimal(value).scaleb(-decimals)


def merge_transfers(logs: list[TransferLog], decimals: int) -> list[TransferEvent]:
    """One event per transaction; multiple transfers in one tx are summed."""
    by_tx: dict[str, list[TransferLog]] = {}
    for log in logs:
        by_tx.setdefault(log.tx_hash, []).append(log)

    events = []
    for tx_hash, tx_logs in by_tx.items():
        first = min(tx_logs, key=lambda log: log.log_index)
        events.append(
            TransferEvent(
                tx_hash=tx_hash,
                from_address=first.from_address,
                to_address=first.to_address,
                amount=to_token_amount(sum(log.value for log in tx_logs), decimals),
                block_number=first.block_number,
                log_index=first.log_index,
            )
        )
    events.sort(key=lambda event: (event.block_number, event.log_index))
    return events


class ChainScanner:
    def __init__(
        self,
        *,
        chain: ChainClient,
        cursors: CursorStore,
        token_address: str,
        recipient: str,
        token_decimals: int = 6,
        max_block_range: int = 2000,
        start_block: Optional[int] = None,
        cursor_name: Optional[str] = None,
    ) -> None:
        if max_block_range < 1:
            raise ValueError("max_block_range must be >= 1")
        self._chain = chain
        self._cursors = cursors
        self.token_address = token_address
        self.recipient = recipient
        self.token_decimals = token_decimals
        self.max_block_range = max_block_range
        self.start_block = start_block
        self.cursor_name = cursor_name or f"transfers:{token_address.lower()}:{recipient.lower()}"

    @property
    def last_scanned_block(self) -> Optional[int]:
        return self._cursors.get_cursor(name=self.cursor_name)

    def next_from_block(self, head: int) -> int:
        cursor = self.last_scanned_block
        if cursor is not None:
            return cursor + 1
        if self.start_block is not None:
            return self.start_block
        return head

    def scan(self, from_block: int, to_block: int, on_chunk: Optional[ChunkHandler] = None) -> list[TransferEvent]:
        """
        Scan [from_block, to_block] in contiguous chunks.

        `on_chunk(events, chunk_end)` is called for each chunk before the cursor
        moves past it. If it raises, the cursor stays at the previous chunk.

        Raises:
            CursorGapError: from_block is not cursor + 1
            ChainRpcError: RPC failure (cursor unchanged for the failing chunk)
        """
        cursor = self.last_scanned_block
        if cursor is not None and from_block != cursor + 1:
            raise CursorGapError(f"Scan must start at block {cursor + 1} (cursor {cursor}), got {from_block}")
        if from_block > to_block:
            return []

        collected: list[TransferEvent] = []
        chunk_start = from_block
        while chunk_start <= to_block:
            chunk_end = min(chunk_start + self.max_block_range - 1, to_block)
            logs = self._chain.get_transfer_logs(
                token_address=self.token_address,
                to_address=self.recipient,
                from_block=chunk_start,
                to_block=chunk_end,
            )
            events = merge_transfers(list(logs), self.token_decimals)
            if on_chunk is not None:
                on_chunk(events, chunk_end)
            self._cursors.set_cursor(name=self.cursor_name, block_number=chunk_end)
            if events:
                logger.info("Blocks %d-%d: %d transfer(s) to %s", chunk_start, chunk_end, len(events), self.recipient)
            collected.extend(events)
            chunk_start = chunk_end + 1

        return collected

    def scan_new(self, on_chunk: Optional[ChunkHandler] = None, *, head: Optional[int] = None) -> ScanResult:
        """Scan everything between the cursor and the chain head."""
        current = self._chain.block_number() if head is None else head
        from_block = self.next_from_block(current)
        if from_block > current:
            logger.debug("No new blocks to scan (cursor %s, head %d)", self.last_scanned_block, current)
            return ScanResult(from_block=from_block, to_block=current, events=())
        events = self.scan(from_block, current, on_chunk)
        return ScanResult(from_block=from_block, to_block=current, events=tuple(events))
