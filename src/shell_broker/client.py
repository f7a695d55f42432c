"""
Interactive client for a running broker.

Reads one JSON control message per line from stdin, checks it is valid
JSON before sending, and prints everything the broker sends back.
"""

import asyncio
import json
import sys
from typing import Any, Optional


PROMPT = "Enter command type and args (JSON format):"


def encode_message(line: str) -> bytes:
    """
    Validate and frame one line of user input.

    Raises:
        ValueError: if the line is not a JSON object.
    """
    document: Any = json.loads(line)
    if not isinstance(document, dict):
        raise ValueError("control messages must be JSON objects")
    return json.dumps(document).encode("utf-8") + b"\n"


class BrokerClient:
    """Line-oriented console client for the control protocol."""

    def __init__(self, host: str, port: int):
        self.host = host
        self.port = port
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    async def connect(self) -> None:
        self._reader, self._writer = await asyncio.open_connection(self.host, self.port)
        print(f"connected to broker on {self.host}:{self.port}")

    async def send(self, line: str) -> bool:
        """Send one line of input. Returns False if it was rejected locally."""
        assert self._writer is not None
        try:
            data = encode_message(line)
        except ValueError as e:
            print(f"error parsing input, not sent: {e}")
            return False
        self._writer.write(data)
        await self._writer.drain()
        return True

    async def _print_incoming(self) -> None:
        assert self._reader is not None
        while True:
            data = await self._reader.read(4096)
            if not data:
                print("broker closed the connection")
                return
            sys.stdout.write(data.decode("utf-8", errors="replace"))
            sys.stdout.flush()

    async def _read_stdin(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            print(PROMPT)
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                return
            line = line.strip()
            if line:
                await self.send(line)

    async def run(self) -> None:
        """Connect and shuttle stdin/stdout until either side ends."""
        await self.connect()
        receiver = asyncio.create_task(self._print_incoming())
        sender = asyncio.create_task(self._read_stdin())
        try:
            await asyncio.wait([receiver, sender], return_when=asyncio.FIRST_COMPLETED)
        finally:
            receiver.cancel()
            sender.cancel()
            await self.close()

    async def close(self) -> None:
        if self._writer is None:
            return
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass
        self._writer = None
