# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Reader for newline-delimited JSON streamed by the Docker daemon.

A producer thread decodes raw output into a queue; consumers either pull with
``next()`` or push every message to a callback with ``listen()``.
"""

import json
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, TextIO

from ..errors import DaemonStreamError
from ..MODELS.response_message import ResponseAux, ResponseMessage
from ..UTILS.streams import iter_lines
from .trace_decoder import TRACE_ID, decode_trace_aux

MessageCallback = Callable[[ResponseMessage], None]


@dataclass
class _Item:
    message: Optional[ResponseMessage] = None
    error: Optional[Exception] = None
    eof: bool = False


def parse_line(line: bytes) -> ResponseMessage:
    """
    Decodes one daemon line into a ResponseMessage. Trace envelopes are decoded and
    resynthesized into a stream message carrying the same summary text.
    """
    payload = json.loads(line)
    if not isinstance(payload, dict):
        raise ValueError(f"unexpected daemon message: {line!r}")
    if payload.get("id") == TRACE_ID and isinstance(payload.get("aux"), str):
        report = decode_trace_aux(payload["aux"])
        return ResponseMessage(stream=report.summary())
    return ResponseMessage.model_validate(payload)


class MessageReader:
    """
    Queue-backed reader which completes after ``expected_eofs`` end markers, one per
    upstream stream (a push of N tags multiplexes N streams into one reader).
    """
    def __init__(self, expected_eofs: int = 1, on_message: Optional[MessageCallback] = None):
        self.expected_eofs = expected_eofs
        self.received_eofs = 0
        self.on_message = on_message
        self._queue: "queue.Queue[_Item]" = queue.Queue()

    def put_message(self, message: ResponseMessage) -> None:
        self._queue.put(_Item(message=message))

    def put_error(self, error: Exception) -> None:
        self._queue.put(_Item(error=error))

    def put_eof(self) -> None:
        self._queue.put(_Item(eof=True))

    def feed(self, chunks: Iterable[bytes], on_message: Optional[MessageCallback] = None) -> None:
        """
        Producer loop: decodes every line of ``chunks`` and always ends with one EOF.
        ``on_message`` overrides the reader-wide hook for this stream.
        """
        on_message = on_message or self.on_message
        try:
            for line in iter_lines(chunks):
                message = parse_line(line)
                if on_message is not None:
                    on_message(message)
                if message.error_message():
                    self.put_error(DaemonStreamError(message.error_message()))
                else:
                    self.put_message(message)
        except Exception as e:
            self.put_error(e)
        finally:
            self.put_eof()

    def feed_in_background(self, chunks: Iterable[bytes], on_message: Optional[MessageCallback] = None) -> threading.Thread:
        thread = threading.Thread(target=self.feed, args=(chunks, on_message), daemon=True)
        thread.start()
        return thread

    def next(self) -> Optional[ResponseMessage]:
        """
        Blocks until the next message. Returns None once all expected EOFs arrived and
        raises the error carried by an error item.
        """
        while True:
            item = self._queue.get()
            if item.eof:
                self.received_eofs += 1
                if self.received_eofs >= self.expected_eofs:
                    return None
                continue
            if item.error is not None:
                raise item.error
            return item.message

    def listen(self, callback: Optional[MessageCallback] = None, output: Optional[TextIO] = None) -> None:
        """
        Processes every message until completion, echoing summaries to ``output``.
        """
        while True:
            message = self.next()
            if message is None:
                return
            if callback is not None:
                callback(message)
            if output is not None:
                output.write(message.summary())

    @classmethod
    def from_messages(cls, *messages: ResponseMessage) -> "MessageReader":
        """A completed reader replaying the given messages."""
        reader = cls(expected_eofs=1)
        for message in messages:
            reader.put_message(message)
        reader.put_eof()
        return reader


def reusing_image_reader(image_id: str) -> MessageReader:
    return MessageReader.from_messages(
        ResponseMessage(status=f"Reusing Docker image {image_id}", aux=ResponseAux(id=image_id))
    )
