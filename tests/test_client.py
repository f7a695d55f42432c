"""
Tests for the interactive client.
"""

import asyncio

import pytest

from shell_broker.client import BrokerClient, encode_message


def test_encode_message_frames_json_object():
    data = encode_message('{"type": "runCommand", "payload": {"command": "ls\\n"}}')

    assert data.endswith(b"\n")
    assert data.count(b"\n") == 1
    assert b'"runCommand"' in data


@pytest.mark.parametrize("line", ["not json", "[1, 2]", '"text"'])
def test_encode_message_rejects_non_objects(line):
    with pytest.raises(ValueError):
        encode_message(line)


@pytest.mark.asyncio
async def test_client_sends_only_valid_messages():
    received = []

    async def on_connect(reader, writer):
        received.append(await reader.readline())
        writer.close()

    server = await asyncio.start_server(on_connect, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    client = BrokerClient("127.0.0.1", port)
    try:
        await client.connect()

        assert await client.send("{oops") is False
        assert await client.send('{"type": "listShells"}') is True

        for _ in range(100):
            if received:
                break
            await asyncio.sleep(0.02)
        assert received == [b'{"type": "listShells"}\n']
    finally:
        await client.close()
        server.close()
        await server.wait_closed()
