from __future__ import annotations

import socket
from typing import Optional, Tuple

Address = Tuple[str, int]


def format_addr(addr: Address) -> str:
    return f"{addr[0]}:{addr[1]}"


class TcpEndpoint:
    """Thin wrapper over a stream socket.

    Each ``send`` is expected to arrive as exactly one ``recv`` on the other
    side. Nothing here adds length framing, so that only holds while a peer
    keeps at most one message in flight.
    """

    def __init__(self, sock: socket.socket):
        self.sock = sock

    @classmethod
    def listening(cls, host: str, port: int, backlog: int) -> "TcpEndpoint":
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            sock.listen(backlog)
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        return cls(sock)

    @classmethod
    def connecting(cls, host: str, port: int, timeout_s: Optional[float] = None) -> "TcpEndpoint":
        sock = socket.create_connection((host, port), timeout=timeout_s)
        sock.settimeout(None)
        return cls(sock)

    @property
    def address(self) -> Address:
        host, port = self.sock.getsockname()[:2]
        return host, port

    def accept(self) -> Optional[Tuple[socket.socket, Address]]:
        """Accept one pending connection, or return None when none is waiting."""
        try:
            conn, addr = self.sock.accept()
        except BlockingIOError:
            return None
        conn.setblocking(True)
        return conn, (addr[0], addr[1])

    def send(self, data: bytes) -> None:
        self.sock.sendall(data)

    def recv(self, bufsize: int, timeout_s: float) -> Optional[bytes]:
        """Wait up to ``timeout_s`` for one message.

        Returns None on timeout and ``b""`` when the peer has closed.
        """
        self.sock.settimeout(timeout_s)
        try:
            return self.sock.recv(bufsize)
        except socket.timeout:
            return None

    def drain(self, bufsize: int = 4096) -> int:
        """Discard whatever is already buffered without waiting; returns bytes dropped."""
        dropped = 0
        self.sock.setblocking(False)
        try:
            while True:
                try:
                    data = self.sock.recv(bufsize)
                except BlockingIOError:
                    break
                if not data:
                    break
                dropped += len(data)
        finally:
            self.sock.setblocking(True)
        return dropped

    def close(self) -> None:
        self.sock.close()
