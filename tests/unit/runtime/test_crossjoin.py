"""
Unit tests for CrossJoiner.

Contract:
  - |A| * |B| pairs, each (a, b) exactly once;
  - pairs stream before either side completes;
  - either side empty -> zero pairs, output still closes;
  - with an AckRelay an input is acked only after the other side closed and
    every pair carrying it was released.
"""

from __future__ import annotations

import asyncio

import pytest

from annoflow.api.streams import Token, join_keys
from annoflow.runtime.channel import AckRelay, Channel
from annoflow.runtime.crossjoin import CrossJoiner

pytestmark = pytest.mark.unit


def _wire():
    left, right, out = Channel("chunks", consumers=1), Channel("index", consumers=1), Channel("pairs", consumers=1)
    return left, right, out, left.subscribe("pairs"), right.subscribe("pairs"), out.subscribe("sink")


async def _drain(sub):
    return [t async for t in sub]


@pytest.mark.asyncio
@pytest.mark.parametrize(("p", "q"), [(3, 2), (1, 4), (0, 3), (2, 0)])
async def test_full_product_exactly_once(p, q):
    left, right, out, ls, rs, sink = _wire()
    reader = asyncio.create_task(_drain(sink))
    join = asyncio.create_task(CrossJoiner("pairs").run(ls, rs, out))

    # interleave the two sides
    for i in range(max(p, q)):
        if i < p:
            await left.put(Token(key=f"c{i}", payload=f"chunk{i}"))
        if i < q:
            await right.put(Token(key=f"m{i}", payload=f"idx{i}"))
    left.close()
    right.close()

    emitted = await join
    pairs = await reader
    assert emitted == p * q
    keys = [t.key for t in pairs]
    assert len(keys) == len(set(keys)) == p * q
    assert set(keys) == {join_keys(f"c{i}", f"m{j}") for i in range(p) for j in range(q)}
    assert all(t.payload == (f"chunk{t.key.split('/')[0][1:]}", f"idx{t.key.split('/')[1][1:]}") for t in pairs)
    assert out.closed


@pytest.mark.asyncio
async def test_pairs_stream_before_sides_complete():
    left, right, out, ls, rs, sink = _wire()
    join = asyncio.create_task(CrossJoiner("pairs").run(ls, rs, out))

    await left.put(Token(key="c1"))
    await right.put(Token(key="m1"))
    first = await asyncio.wait_for(sink.__anext__(), timeout=1.0)
    assert first.key == "c1/m1"
    assert not left.closed and not right.closed

    left.close()
    right.close()
    assert await join == 1


@pytest.mark.asyncio
async def test_relay_keeps_inputs_until_their_pairs_are_consumed():
    released: list[str] = []
    relay = AckRelay()
    left = Channel("chunks", consumers=1, on_release=lambda t: released.append(t.key))
    right = Channel("index", consumers=1, on_release=lambda t: released.append(t.key))
    out = Channel("pairs", consumers=1, on_release=relay.release)
    ls, rs, sink = left.subscribe("pairs"), right.subscribe("pairs"), out.subscribe("search")
    join = asyncio.create_task(CrossJoiner("pairs").run(ls, rs, out, relay=relay))

    await left.put(Token(key="c1"))
    await right.put(Token(key="m1"))
    first = await asyncio.wait_for(sink.__anext__(), timeout=1.0)
    sink.ack(first)
    assert released == []  # both sides still open: c1 and m1 may pair again

    right.close()
    await asyncio.sleep(0.01)
    assert released == ["c1"]  # no new index can arrive; its only pair is done

    await left.put(Token(key="c2"))
    second = await asyncio.wait_for(sink.__anext__(), timeout=1.0)
    assert second.key == "c2/m1"
    left.close()
    assert await join == 2
    assert released == ["c1"]

    sink.ack(second)
    assert sorted(released) == ["c1", "c2", "m1"]
    assert relay.pending == 0
