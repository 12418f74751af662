"""Tests for the identity provider."""

from care_sync.identity import IdentityProvider


async def test_handlers_run_in_order_on_change():
    identity = IdentityProvider()
    seen = []

    async def first(subject):
        seen.append(("first", subject))

    async def second(subject):
        seen.append(("second", subject))

    identity.on_subject_change(first)
    identity.on_subject_change(second)

    await identity.sign_in("S")
    await identity.sign_out()

    assert seen == [("first", "S"), ("second", "S"), ("first", None), ("second", None)]
    assert identity.current_subject() is None


async def test_unchanged_subject_is_noop():
    identity = IdentityProvider("S")
    calls = []

    async def handler(subject):
        calls.append(subject)

    identity.on_subject_change(handler)
    await identity.set_subject("S")

    assert calls == []


async def test_failing_handler_does_not_stop_others():
    identity = IdentityProvider()
    calls = []

    async def broken(subject):
        raise RuntimeError("boom")

    async def healthy(subject):
        calls.append(subject)

    identity.on_subject_change(broken)
    identity.on_subject_change(healthy)

    await identity.sign_in("S")

    assert calls == ["S"]
    assert identity.current_subject() == "S"
