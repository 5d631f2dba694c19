"""Tests for notification filtering and dispatch."""

import asyncio

import pytest

from portal_realtime.config import NotificationConfig
from portal_realtime.dispatch import NotificationDispatcher
from portal_realtime.membership import MembershipCache

from .fakes import (
    AsyncSound,
    FakeMembershipStore,
    FakeNotificationStore,
    FakeSound,
    HangingSound,
    RecordingPresenter,
    insert,
    recording_invalidator,
    wait_until,
)

ME = "user-me"
OTHER = "user-other"
FIFTY = "abcdefghij" * 5
THIRTY = "x" * 30


class Harness:
    def __init__(self, memberships=None, sound=None, presenter=None, store=None):
        self.user_id = ME
        self.membership = MembershipCache(FakeMembershipStore({ME: memberships or []}))
        self.presenter = presenter or RecordingPresenter()
        self.sound = sound or FakeSound()
        self.invalidator, self.signals = recording_invalidator()
        self.dispatcher = NotificationDispatcher(
            current_user=lambda: self.user_id,
            membership=self.membership,
            presenter=self.presenter,
            invalidator=self.invalidator,
            sound=self.sound,
            store=store,
        )

    async def load(self):
        await self.membership.refresh(ME)


@pytest.fixture
async def harness():
    h = Harness(memberships=[("ClassA", "Math"), ("Class 12", "Physics (Hindi)")])
    await h.load()
    return h


def community(author=OTHER, batch="ClassA", subject="Math", content=FIFTY, **extra):
    return insert(
        "community_messages",
        id="m1",
        user_id=author,
        batch=batch,
        subject=subject,
        content=content,
        **extra,
    )


async def test_community_scenario_enrolled_other_author(harness):
    result = await harness.dispatcher.handle_community_message(community())

    assert result is not None
    assert harness.presenter.shown == [result]
    assert result.body == FIFTY[:40] + "..."
    assert result.action.target == "/community?batch=ClassA&subject=Math"
    assert result.title == "New in Math"
    assert result.kind == "community"
    assert harness.signals == [("notifications", "virtual-notifications")]


async def test_self_authored_community_message_is_dropped(harness):
    result = await harness.dispatcher.handle_community_message(community(author=ME))

    assert result is None
    assert harness.presenter.shown == []
    assert harness.sound.plays == 0
    assert harness.signals == []


async def test_self_exclusion_reads_identity_live(harness):
    event = community(author="user-new")
    harness.user_id = "user-new"
    assert await harness.dispatcher.handle_community_message(event) is None


async def test_non_member_pair_is_dropped(harness):
    assert await harness.dispatcher.handle_community_message(community(subject="Biology")) is None
    assert await harness.dispatcher.handle_community_message(community(batch="ClassB")) is None
    assert harness.presenter.shown == []


async def test_relevance_is_exact_match_not_merge_expansion():
    # ("ClassB", "Math") may be merged with ("ClassA", "Math") administratively,
    # but inbound relevance only looks at the enrolled pair itself.
    h = Harness(memberships=[("ClassA", "Math")])
    await h.load()
    assert await h.dispatcher.handle_community_message(community(batch="ClassB")) is None


async def test_event_before_membership_loaded_is_dropped():
    h = Harness(memberships=[("ClassA", "Math")])
    assert await h.dispatcher.handle_community_message(community()) is None


async def test_no_identity_drops_community_events(harness):
    harness.user_id = None
    assert await harness.dispatcher.handle_community_message(community()) is None


async def test_short_body_passes_through(harness):
    result = await harness.dispatcher.handle_community_message(community(content=THIRTY))
    assert result.body == THIRTY


async def test_body_of_exactly_forty_chars_is_not_truncated(harness):
    text = "y" * 40
    result = await harness.dispatcher.handle_community_message(community(content=text))
    assert result.body == text


async def test_deep_link_percent_encodes_spaces(harness):
    result = await harness.dispatcher.handle_community_message(
        community(batch="Class 12", subject="Physics (Hindi)")
    )
    assert result.action.target == "/community?batch=Class%2012&subject=Physics%20(Hindi)"


async def test_empty_content_uses_placeholder(harness):
    result = await harness.dispatcher.handle_community_message(community(content=None))
    assert result.body == "Sent an image"


async def test_direct_message_always_notifies(harness):
    event = insert(
        "direct_messages",
        id="dm1",
        sender_id="tutor-7",
        sender_name="Ms. Rao",
        receiver_id=ME,
        content="Please check the notes",
    )
    result = await harness.dispatcher.handle_direct_message(event)

    assert result.title == "Message from Ms. Rao"
    assert result.action.target == "/messages?chatId=tutor-7"
    assert result.kind == "dm"
    assert harness.sound.plays == 1


async def test_direct_message_without_sender_is_ignored(harness):
    assert await harness.dispatcher.handle_direct_message(insert("direct_messages", id="x")) is None


async def test_sound_failure_never_blocks_notification():
    h = Harness(memberships=[("ClassA", "Math")], sound=FakeSound(fail=True))
    await h.load()
    result = await h.dispatcher.handle_community_message(community())

    assert result is not None
    assert h.sound.plays == 1
    assert h.presenter.shown == [result]


async def test_async_sound_player_runs_in_background():
    sound = AsyncSound()
    h = Harness(memberships=[("ClassA", "Math")], sound=sound)
    await h.load()
    await h.dispatcher.handle_community_message(community())

    assert await wait_until(lambda: sound.plays == 1 and h.dispatcher.pending_cues == 0)


async def test_hanging_sound_player_does_not_hold_back_notifications():
    sound = HangingSound()
    h = Harness(memberships=[("ClassA", "Math")], sound=sound)
    await h.load()

    first = await asyncio.wait_for(h.dispatcher.handle_community_message(community()), timeout=1)
    second = await asyncio.wait_for(
        h.dispatcher.handle_community_message(community(content="second")), timeout=1
    )

    assert h.presenter.shown == [first, second]
    assert h.signals
    assert await wait_until(lambda: sound.plays == 2)
    assert h.dispatcher.pending_cues == 2

    h.dispatcher.cancel_cues()
    assert await wait_until(lambda: h.dispatcher.pending_cues == 0)


async def test_failing_async_sound_player_is_contained():
    sound = AsyncSound(fail=True)
    h = Harness(memberships=[("ClassA", "Math")], sound=sound)
    await h.load()
    result = await h.dispatcher.handle_community_message(community())

    assert h.presenter.shown == [result]
    assert await wait_until(lambda: sound.plays == 1 and h.dispatcher.pending_cues == 0)


async def test_presenter_failure_is_contained():
    h = Harness(memberships=[("ClassA", "Math")], presenter=RecordingPresenter(fail=True))
    await h.load()
    result = await h.dispatcher.handle_community_message(community())
    assert result is not None
    assert h.signals


async def test_sound_disabled_in_config(harness):
    dispatcher = NotificationDispatcher(
        current_user=lambda: ME,
        membership=harness.membership,
        presenter=harness.presenter,
        invalidator=harness.invalidator,
        sound=harness.sound,
        config=NotificationConfig(sound_enabled=False),
    )
    await dispatcher.handle_community_message(community())
    assert harness.sound.plays == 0


async def test_system_notification_and_mark_read():
    store = FakeNotificationStore()
    h = Harness(store=store)
    event = insert(
        "notifications",
        id="n-42",
        title="Fee reminder",
        message="Your installment is due",
        target_user_id=ME,
    )
    result = await h.dispatcher.handle_system_notification(event)

    assert result.title == "Fee reminder"
    assert result.action.label == "Mark Read"
    assert result.action.target == "/notifications?id=n-42"

    h.signals.clear()
    assert await h.dispatcher.mark_read("n-42") is True
    assert store.read == ["n-42"]
    assert h.signals == [("notifications", "virtual-notifications")]


async def test_mark_read_failure_returns_false():
    h = Harness(store=FakeNotificationStore(fail=True))
    assert await h.dispatcher.mark_read("n-1") is False
    assert h.signals == []
