"""Destinations for decoded spans."""

from collections import defaultdict
import json
import logging
import sys
from typing import Any
from typing import DefaultDict
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Sequence
from typing import TextIO

from aiohttp import ClientError
from aiohttp import ClientSession
from yarl import URL

from .sampler import should_sample
from .span import Span
from .span import span_json_default


log = logging.getLogger(__name__)


DEFAULT_API_HOST = "https://api.honeycomb.io/"

DATASET_TAG = "honeycomb.dataset"
SAMPLE_RATE_TAG = "honeycomb.samplerate"


class Sink:
    """Something to do with decoded spans, e.g. send them to Honeycomb or print them."""

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    async def send(self, spans: Sequence[Span]) -> None:
        raise NotImplementedError()


class CompositeSink(Sink):
    """Send spans to each of the given sinks."""

    def __init__(self, sinks: Optional[Iterable[Sink]] = None) -> None:
        self._sinks: List[Sink] = list(sinks or [])

    def add(self, sink: Sink) -> None:
        self._sinks.append(sink)

    @property
    def sinks(self) -> List[Sink]:
        return list(self._sinks)

    async def start(self) -> None:
        for s in self._sinks:
            await s.start()

    async def stop(self) -> None:
        for s in self._sinks:
            await s.stop()

    async def send(self, spans: Sequence[Span]) -> None:
        # One failing destination must not keep the spans from the others.
        for s in self._sinks:
            try:
                await s.send(spans)
            except Exception:
                log.warning("error sending %d spans to %r", len(spans), s, exc_info=True)


class StdoutSink(Sink):
    """Write each span as a JSON line."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self._stream = stream

    async def send(self, spans: Sequence[Span]) -> None:
        stream = self._stream or sys.stdout
        for span in spans:
            stream.write(json.dumps(span.to_dict(), default=span_json_default) + "\n")
        stream.flush()


class HoneycombSink(Sink):
    """Send spans as events to the Honeycomb batch API.

    Spans are sampled per trace at ``1/sample_rate``. A span can route itself
    to another dataset with the ``honeycomb.dataset`` tag and report a
    different sample rate with ``honeycomb.samplerate``; neither tag is sent as
    a field, and neither is ``drop_fields``.
    """

    def __init__(
        self,
        writekey: str,
        dataset: str,
        api_host: str = DEFAULT_API_HOST,
        sample_rate: int = 1,
        drop_fields: Iterable[str] = (),
    ) -> None:
        self.writekey = writekey
        self.dataset = dataset
        self.api_host = URL(api_host)
        self.sample_rate = max(sample_rate, 1)
        self.drop_fields = frozenset(drop_fields)
        self._session: Optional[ClientSession] = None

    def __repr__(self) -> str:
        return "<HoneycombSink dataset=%r api_host=%r sample_rate=%r>" % (
            self.dataset,
            str(self.api_host),
            self.sample_rate,
        )

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession()
        return self._session

    async def start(self) -> None:
        await self._get_session()

    async def stop(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def batch_url(self, dataset: str) -> URL:
        return self.api_host / "1" / "batch" / dataset

    def event(self, span: Span) -> Dict[str, Any]:
        """Return the batch API event for a span."""
        data = span.to_dict()
        del data["timestamp"]
        tags = data.pop("tags", {})

        sample_rate = self.sample_rate
        override = tags.pop(SAMPLE_RATE_TAG, None)
        if isinstance(override, int) and not isinstance(override, bool):
            sample_rate = max(override, 1)
        elif override is not None:
            log.debug("ignoring non integer %s tag %r on span %s", SAMPLE_RATE_TAG, override, span.span_id)

        for k, v in tags.items():
            if k in self.drop_fields or k == DATASET_TAG:
                continue
            data[k] = v
        return {
            "time": span.timestamp.isoformat(),
            "samplerate": sample_rate,
            "data": data,
        }

    def dataset_for(self, span: Span) -> str:
        dataset = span.tags.get(DATASET_TAG)
        if isinstance(dataset, str) and dataset:
            return dataset
        return self.dataset

    def batches(self, spans: Sequence[Span]) -> Dict[str, List[Dict[str, Any]]]:
        """Return the sampled events of the spans grouped by dataset."""
        batches: DefaultDict[str, List[Dict[str, Any]]] = defaultdict(list)
        for span in spans:
            if not should_sample(span.trace_id_numeric, self.sample_rate):
                continue
            batches[self.dataset_for(span)].append(self.event(span))
        return batches

    async def send(self, spans: Sequence[Span]) -> None:
        session = await self._get_session()
        for dataset, events in self.batches(spans).items():
            url = self.batch_url(dataset)
            try:
                async with session.post(
                    url,
                    data=json.dumps(events, default=span_json_default),
                    headers={"X-Honeycomb-Team": self.writekey, "Content-Type": "application/json"},
                ) as resp:
                    if resp.status >= 300:
                        body = await resp.text()
                        log.info(
                            "error response [%d] sending %d events to %s: %s", resp.status, len(events), url, body[:1024]
                        )
                    else:
                        log.debug("sent %d events to %s", len(events), url)
            except ClientError as e:
                log.info("error sending %d events to %s: %s", len(events), url, e)
