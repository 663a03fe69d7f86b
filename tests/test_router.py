import asyncio

import pytest

from subagain import error, registry, router
from tests.fakes import FakeConnection, Recorder, settle


def _operation(
    kind: router.OperationKind,
    identifiers: list[bytes] | None = None,
    handler=None,
    transform=None,
) -> router.PendingOperation:
    future = asyncio.get_running_loop().create_future()
    return router.PendingOperation(kind, future, identifiers=identifiers, handler=handler, transform=transform)


@pytest.fixture()
def push_router() -> router.PushRouter:
    return router.PushRouter(FakeConnection())


@pytest.mark.asyncio
async def test_subscribe_resolves_after_every_confirmation(push_router: router.PushRouter):
    handler = Recorder()
    op = _operation(router.OperationKind.SUBSCRIBE, [b"channel1", b"channel2", b"channel3"], handler)
    push_router.enqueue(op)

    await push_router.dispatch([b"subscribe", b"channel1", 1])
    await push_router.dispatch([b"subscribe", b"channel2", 2])

    assert not op.future.done()
    assert set(push_router.subscriptions.channels) == {b"channel1", b"channel2"}

    await push_router.dispatch([b"subscribe", b"channel3", 3])

    assert op.future.result() == 3
    assert push_router.pending == 0


@pytest.mark.asyncio
async def test_message_between_confirmations_is_delivered(push_router: router.PushRouter):
    handler = Recorder()
    op = _operation(router.OperationKind.SUBSCRIBE, [b"channel1", b"channel2"], handler)
    push_router.enqueue(op)

    await push_router.dispatch([b"subscribe", b"channel1", 1])
    await push_router.dispatch([b"message", b"channel1", b"A"])

    assert handler.calls == [(b"channel1", None, b"A")]
    assert not op.future.done()

    await push_router.dispatch([b"subscribe", b"channel2", 2])
    assert op.future.done()


@pytest.mark.asyncio
async def test_confirmations_resolve_in_fifo_order(push_router: router.PushRouter):
    handler = Recorder()
    first = _operation(router.OperationKind.SUBSCRIBE, [b"channel1"], handler)
    second = _operation(router.OperationKind.PSUBSCRIBE, [b"c*"], handler)
    third = _operation(router.OperationKind.UNSUBSCRIBE, [b"channel1"])
    for op in (first, second, third):
        push_router.enqueue(op)

    await push_router.dispatch([b"subscribe", b"channel1", 1])
    assert first.future.done() and not second.future.done()

    await push_router.dispatch([b"psubscribe", b"c*", 2])
    assert second.future.done() and not third.future.done()

    await push_router.dispatch([b"unsubscribe", b"channel1", 1])
    assert third.future.result() == 1
    assert push_router.subscriptions.channel_count() == 0
    assert push_router.subscriptions.pattern_count() == 1


@pytest.mark.asyncio
async def test_pmessage_is_routed_by_the_echoed_pattern(push_router: router.PushRouter):
    broad, narrow = Recorder(), Recorder()
    push_router.subscriptions.add_pattern(b"*", broad)
    push_router.subscriptions.add_pattern(b"c?annel1", narrow)

    await push_router.dispatch([b"pmessage", b"c?annel1", b"channel1", b"A"])

    assert narrow.calls == [(b"channel1", b"c?annel1", b"A")]
    assert broad.calls == []


@pytest.mark.asyncio
async def test_message_only_reaches_the_channel_handler(push_router: router.PushRouter):
    channel_handler, pattern_handler = Recorder(), Recorder()
    push_router.subscriptions.add_channel(b"channel1", channel_handler)
    push_router.subscriptions.add_pattern(b"channel*", pattern_handler)

    await push_router.dispatch([b"message", b"channel1", b"A"])

    assert channel_handler.calls == [(b"channel1", None, b"A")]
    assert pattern_handler.calls == []


@pytest.mark.asyncio
async def test_async_handlers_run_beside_the_router(push_router: router.PushRouter):
    received = []

    async def handler(channel, pattern, payload):
        await asyncio.sleep(0)
        received.append(payload)

    push_router.subscriptions.add_channel(b"channel1", handler)
    await push_router.dispatch([b"message", b"channel1", b"A"])
    await push_router.dispatch([b"message", b"channel1", b"B"])
    await settle()

    assert received == [b"A", b"B"]


@pytest.mark.asyncio
async def test_teardown_cancels_running_async_handlers(push_router: router.PushRouter):
    started = asyncio.Event()
    cancelled = asyncio.Event()

    async def handler(channel, pattern, payload):
        started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            cancelled.set()
            raise

    push_router.subscriptions.add_channel(b"channel1", handler)
    await push_router.dispatch([b"message", b"channel1", b"A"])
    await asyncio.wait_for(started.wait(), 1.0)

    push_router.teardown(error.ConnectionClosedError("closed"))

    await asyncio.wait_for(cancelled.wait(), 1.0)


@pytest.mark.asyncio
async def test_failing_handler_does_not_stop_routing(push_router: router.PushRouter):
    def explode(channel, pattern, payload):
        raise RuntimeError("boom")

    recorder = Recorder()
    push_router.subscriptions.add_channel(b"channel1", explode)
    push_router.subscriptions.add_channel(b"channel2", recorder)

    await push_router.dispatch([b"message", b"channel1", b"A"])
    await push_router.dispatch([b"message", b"channel2", b"B"])

    assert recorder.calls == [(b"channel2", None, b"B")]


@pytest.mark.asyncio
async def test_unsubscribe_all_with_nothing_subscribed_completes_on_nil(push_router: router.PushRouter):
    op = _operation(router.OperationKind.UNSUBSCRIBE)
    push_router.enqueue(op)

    await push_router.dispatch([b"unsubscribe", None, 0])

    assert op.future.result() == 0
    assert push_router.pending == 0


@pytest.mark.asyncio
async def test_unsubscribe_all_waits_for_every_channel(push_router: router.PushRouter):
    handler = Recorder()
    push_router.subscriptions.add_channel(b"channel1", handler)
    push_router.subscriptions.add_channel(b"channel2", handler)
    push_router.subscriptions.add_pattern(b"c*", handler)

    op = _operation(router.OperationKind.UNSUBSCRIBE)
    push_router.enqueue(op)

    # The remaining count includes the pattern subscription.
    await push_router.dispatch([b"unsubscribe", b"channel2", 2])
    assert not op.future.done()

    await push_router.dispatch([b"unsubscribe", b"channel1", 1])
    assert op.future.result() == 1
    assert push_router.subscriptions.pattern_count() == 1


@pytest.mark.asyncio
async def test_malformed_confirmation_fails_only_its_operation(push_router: router.PushRouter):
    handler = Recorder()
    broken = _operation(router.OperationKind.SUBSCRIBE, [b"channel1", b"channel2"], handler)
    healthy = _operation(router.OperationKind.SUBSCRIBE, [b"channel3"], handler)
    push_router.enqueue(broken)
    push_router.enqueue(healthy)

    await push_router.dispatch([b"subscribe", b"channel1"])
    assert not broken.future.done()

    await push_router.dispatch([b"subscribe", b"channel2", 2])
    with pytest.raises(error.ProtocolError):
        broken.future.result()

    await push_router.dispatch([b"subscribe", b"channel3", 3])
    assert healthy.future.result() == 3
    assert set(push_router.subscriptions.channels) == {b"channel2", b"channel3"}


@pytest.mark.asyncio
async def test_mismatched_confirmation_still_tracks_the_echoed_channel(push_router: router.PushRouter):
    handler = Recorder()
    op = _operation(router.OperationKind.SUBSCRIBE, [b"channel1"], handler)
    push_router.enqueue(op)

    await push_router.dispatch([b"subscribe", b"channel9", 1])

    with pytest.raises(error.ProtocolError):
        op.future.result()

    assert set(push_router.subscriptions.channels) == {b"channel9"}

    await push_router.dispatch([b"message", b"channel9", b"A"])
    assert handler.calls == [(b"channel9", None, b"A")]


@pytest.mark.asyncio
async def test_malformed_message_is_dropped(push_router: router.PushRouter):
    recorder = Recorder()
    push_router.subscriptions.add_channel(b"channel1", recorder)

    await push_router.dispatch([b"message", b"channel1"])
    await push_router.dispatch([b"message", b"channel1", b"A"])

    assert recorder.calls == [(b"channel1", None, b"A")]


@pytest.mark.asyncio
async def test_reply_operation_takes_next_non_delivery_frame(push_router: router.PushRouter):
    recorder = Recorder()
    push_router.subscriptions.add_channel(b"channel1", recorder)
    op = _operation(router.OperationKind.REPLY, transform=lambda reply: reply * 2)
    push_router.enqueue(op)

    await push_router.dispatch([b"message", b"channel1", b"A"])
    assert not op.future.done()

    await push_router.dispatch(2)
    assert op.future.result() == 4
    assert recorder.calls == [(b"channel1", None, b"A")]


@pytest.mark.asyncio
async def test_reply_shaped_like_a_message_resolves_when_nothing_is_subscribed(push_router: router.PushRouter):
    numsub = _operation(router.OperationKind.REPLY)
    channels = _operation(router.OperationKind.REPLY)
    push_router.enqueue(numsub)
    push_router.enqueue(channels)

    await push_router.dispatch([b"message", 0])
    await push_router.dispatch([b"message", b"x", b"y"])

    assert numsub.future.result() == [b"message", 0]
    assert channels.future.result() == [b"message", b"x", b"y"]
    assert push_router.pending == 0


@pytest.mark.asyncio
async def test_error_reply_fails_head_operation(push_router: router.PushRouter):
    op = _operation(router.OperationKind.REPLY)
    push_router.enqueue(op)

    push_router.fail(error.ResponseError("ERR", "nope"))

    with pytest.raises(error.ResponseError):
        op.future.result()


@pytest.mark.asyncio
async def test_run_tears_down_when_connection_drops():
    con = FakeConnection()
    push_router = router.PushRouter(con)
    push_router.subscriptions.add_channel(b"channel1", Recorder())
    op = _operation(router.OperationKind.SUBSCRIBE, [b"channel2"], Recorder())
    push_router.enqueue(op)

    con.feed(error.ConnectionError("connection reset by peer"))
    await push_router.run()

    with pytest.raises(error.ConnectionClosedError):
        op.future.result()

    assert push_router.closed
    assert len(push_router.subscriptions) == 0

    with pytest.raises(error.NotConnectedError):
        push_router.enqueue(_operation(router.OperationKind.REPLY))


@pytest.mark.asyncio
async def test_run_survives_error_replies_and_unknown_frames():
    con = FakeConnection()
    push_router = router.PushRouter(con)
    failing = _operation(router.OperationKind.REPLY)
    succeeding = _operation(router.OperationKind.SUBSCRIBE, [b"channel1"], Recorder())
    push_router.enqueue(failing)
    push_router.enqueue(succeeding)

    con.feed(error.ResponseError("ERR", "unknown command"))
    con.feed([b"bogus", b"frame"])
    con.feed([b"subscribe", b"channel1", 1])
    con.feed(error.ConnectionError("bye"))
    await push_router.run()

    with pytest.raises(error.ResponseError):
        failing.future.result()
    assert succeeding.future.result() == 1
    assert push_router.subscriptions.get(b"channel1", registry.SubscriptionKind.CHANNEL) is None
