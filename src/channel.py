from __future__ import annotations

from collections.abc import Iterable, Iterator
import logging
import queue


logger = logging.getLogger(__name__)


class ChannelClosedError(RuntimeError):
    pass


class StreamRelayError(RuntimeError):
    pass


class _EndOfStream:
    __slots__ = ("error",)

    def __init__(self, error: BaseException | None = None) -> None:
        self.error = error


class ChunkChannel:
    """Byte chunks handed from the capture layer to a parser running elsewhere.

    Iterating the channel blocks until the producer puts a chunk or closes it.
    A producer-side failure is re-raised to the consumer as StreamRelayError.
    A consumer that stops early detaches the channel: queued chunks are dropped
    and later puts are discarded, so the producer never blocks on it.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: queue.Queue[bytes | _EndOfStream] = queue.Queue(maxsize=maxsize)
        self._closed = False
        self._detached = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def detached(self) -> bool:
        return self._detached

    def put(self, chunk: bytes) -> None:
        if self._closed:
            raise ChannelClosedError("Cannot put into a closed channel")
        if self._detached:
            return
        self._queue.put(bytes(chunk))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._detached:
            self._queue.put(_EndOfStream())

    def fail(self, error: BaseException) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._detached:
            self._queue.put(_EndOfStream(error))

    def detach(self) -> None:
        self._detached = True
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
        logger.debug("Channel consumer detached")

    def __iter__(self) -> Iterator[bytes]:
        if self._detached:
            return
        finished = False
        try:
            while True:
                item = self._queue.get()
                if isinstance(item, _EndOfStream):
                    finished = True
                    # Leave the marker for any other consumer.
                    self._queue.put(item)
                    if item.error is not None:
                        raise StreamRelayError(str(item.error)) from item.error
                    return
                yield item
        finally:
            if not finished:
                self.detach()


def tee_chunks(source: Iterable[bytes], channel: ChunkChannel) -> Iterator[bytes]:
    iterator = iter(source)
    try:
        for chunk in iterator:
            channel.put(chunk)
            yield chunk
    except Exception as exc:
        logger.debug("Upstream stream failed; propagating to channel consumer", exc_info=True)
        channel.fail(exc)
        raise
    finally:
        channel.close()
        close = getattr(iterator, "close", None)
        if callable(close):
            close()
