"""Polling and raw-socket helpers shared by the live relay tests."""

import time

import zmq

from xrwall.protocol import Envelope, MessageType, decode_envelope, encode_envelope


def wait_until(predicate, timeout: float = 3.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class RawPeer:
    """A DEALER socket that only speaks when told to."""

    def __init__(self, port: int):
        self.context = zmq.Context()
        self.socket = self.context.socket(zmq.DEALER)
        self.socket.setsockopt(zmq.LINGER, 0)
        self.socket.connect(f"tcp://127.0.0.1:{port}")

    def send(self, message_type: MessageType, **payload):
        self.socket.send(encode_envelope(Envelope.create(message_type, **payload)))

    def recv(self, timeout_ms: int = 2000) -> Envelope:
        assert self.socket.poll(timeout_ms), "no reply from relay"
        return decode_envelope(self.socket.recv())

    def close(self):
        self.socket.close()
        self.context.term()
