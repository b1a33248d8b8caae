"""Streaming CSV fan-out into the entity store.

The upload is decoded incrementally and cut at record boundaries, so a
quoted field may span chunks. Rows are grouped into fixed-size batches and
handed to a single flush task through a bounded queue: parsing continues
while a flush is in flight, pauses once ``max_inflight`` batches are
waiting, and flushes land in the order they were produced.
"""
import asyncio
import codecs
import csv
import io
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from web.backend.core.bulk.constants import CSV_COLUMNS
from web.backend.core.bulk.store import EntityStore

logger = logging.getLogger(__name__)

_SENTINEL = None


def _split_complete(text: str) -> Tuple[str, str]:
    """Split ``text`` after the last newline that ends a complete record."""
    cut = 0
    quotes = 0
    pos = 0
    while True:
        nl = text.find("\n", pos)
        if nl == -1:
            break
        quotes += text.count('"', pos, nl + 1)
        pos = nl + 1
        if quotes % 2 == 0:
            cut = pos
    return text[:cut], text[cut:]


async def iter_csv_records(chunks: AsyncIterator[bytes], encoding: str = "utf-8-sig") -> AsyncIterator[List[str]]:
    """Yield parsed CSV records from a stream of byte chunks."""
    decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
    pending = ""
    async for chunk in chunks:
        if not chunk:
            continue
        pending += decoder.decode(chunk)
        complete, pending = _split_complete(pending)
        if complete:
            for record in csv.reader(io.StringIO(complete)):
                yield record
    pending += decoder.decode(b"", final=True)
    if pending:
        for record in csv.reader(io.StringIO(pending)):
            yield record


def _parse_age(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def row_to_entity(record: List[str]) -> Dict[str, Any]:
    """Map a positional ``id,name,email,age,status`` record to a work item."""
    values = dict(zip(CSV_COLUMNS, (v.strip() for v in record)))
    data = {col: values.get(col) for col in CSV_COLUMNS}
    data["age"] = _parse_age(values.get("age"))
    return {"entity_id": data["id"] or "", "entity_data": data}


class CsvIngestor:
    def __init__(self, entities: EntityStore, batch_size: int = 1000, max_inflight: int = 2):
        self._entities = entities
        self._batch_size = batch_size
        self._max_inflight = max_inflight

    async def ingest(self, action_id: str, chunks: AsyncIterator[bytes]) -> int:
        """Stream rows into the entity store. Returns the number of entities stored."""
        batches: asyncio.Queue = asyncio.Queue(maxsize=self._max_inflight)
        flusher = asyncio.create_task(self._flush_batches(action_id, batches))
        rows = 0
        try:
            batch: List[Dict[str, Any]] = []
            header_skipped = False
            async for record in iter_csv_records(chunks):
                if not header_skipped:
                    header_skipped = True
                    continue
                if not any(v.strip() for v in record):
                    continue
                batch.append(row_to_entity(record))
                rows += 1
                if len(batch) >= self._batch_size:
                    await self._hand_off(batches, batch, flusher)
                    batch = []
            if batch:
                await self._hand_off(batches, batch, flusher)
            await self._hand_off(batches, _SENTINEL, flusher)
            stored = await flusher
        except BaseException:
            flusher.cancel()
            await asyncio.gather(flusher, return_exceptions=True)
            raise

        logger.info("Ingested %d CSV rows for action %s (%d stored)", rows, action_id, stored)
        return stored

    @staticmethod
    async def _hand_off(batches: asyncio.Queue, item, flusher: asyncio.Task) -> None:
        """Queue ``item`` for flushing, unless the flusher has already died."""
        if flusher.done():
            flusher.result()
            raise RuntimeError("CSV flush task exited early")
        put = asyncio.ensure_future(batches.put(item))
        done, _ = await asyncio.wait({put, flusher}, return_when=asyncio.FIRST_COMPLETED)
        if put in done:
            return
        put.cancel()
        flusher.result()
        raise RuntimeError("CSV flush task exited early")

    async def _flush_batches(self, action_id: str, batches: asyncio.Queue) -> int:
        stored = 0
        flushed = 0
        while True:
            batch = await batches.get()
            if batch is _SENTINEL:
                return stored
            stored += await self._entities.create_entities(action_id, batch)
            flushed += 1
            logger.debug("Action %s: flushed CSV batch %d (%d rows)", action_id, flushed, len(batch))
