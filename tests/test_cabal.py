import asyncio
import unittest

from cabal_client.cabal import CabalState, Lifecycle
from cabal_client.channels import STATUS_CHANNEL
from cabal_client.errors import InvalidChannelName, NotAvailable, NotFound, UnsupportedMessageType, UpstreamFailure
from cabal_client.log import InMemoryCabalLog
from cabal_client.settings import InMemorySettingsStore

CABAL = "0" * 64
LOCAL = "a" * 64
PEER = "b" * 64
OTHER = "c" * 64


class FakeClock:
    def __init__(self, start_ms: int = 1_000_000) -> None:
        self.now_ms = start_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)

    def now(self) -> int:
        return self.now_ms


class GatedLog(InMemoryCabalLog):
    """Holds the roster fetch until ``gate`` is set."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gate = asyncio.Event()

    async def get_users(self):
        await self.gate.wait()
        return await super().get_users()


class SlowReadyLog(InMemoryCabalLog):
    """Reports ready only once ``ready_gate`` is set, recording the reads made so far."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.ready_gate = asyncio.Event()
        self.calls = []

    async def ready(self):
        await self.ready_gate.wait()
        await super().ready()

    async def list_channels(self):
        self.calls.append("list_channels")
        return await super().list_channels()


class HeldPublishLog(InMemoryCabalLog):
    """Writes immediately but holds the publish result back while ``holding`` is set."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.holding = False
        self.release = asyncio.Event()

    async def publish(self, message, opts=None):
        published = await super().publish(message, opts)
        if self.holding:
            await self.release.wait()
        return published

    async def publish_private(self, message, recipient):
        published = await super().publish_private(message, recipient)
        if self.holding:
            await self.release.wait()
        return published


def _chat(channel, text, type="chat/text"):
    return {"type": type, "content": {"channel": channel, "text": text}}


class CabalStateTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.log = InMemoryCabalLog(CABAL, local_key=LOCAL, now_func=self.clock.now)
        self.settings = InMemorySettingsStore()
        self.state = CabalState(self.log, settings=self.settings, now_func=self.clock.now)
        self.events = []
        for event_type in (
            "init",
            "info",
            "error",
            "end",
            "new-channel",
            "new-message",
            "private-message",
            "publish-message",
            "publish-private-message",
            "user-updated",
            "topic",
            "channel-focus",
            "channel-join",
            "channel-leave",
            "channel-archive",
            "started-peering",
            "stopped-peering",
        ):
            self.state.on(event_type, self.events.append)

    async def asyncTearDown(self):
        await self.state.destroy()

    def emitted(self, event_type):
        return [event.payload for event in self.events if event.type == event_type]


class BootstrapTests(CabalStateTestCase):
    async def test_joins_default_channel_when_nothing_is_joined(self):
        await self.state.initialize()
        self.assertIs(self.state.lifecycle, Lifecycle.READY)
        self.assertEqual(self.state.get_joined_channels(), ["default"])
        self.assertEqual(self.state.get_current_channel(), "default")
        self.assertIn("default", self.state.get_channels())
        self.assertEqual(len(self.emitted("init")), 1)
        self.assertEqual(self.emitted("channel-join"), [{"channel": "default", "key": LOCAL, "isLocal": True}])

    async def test_existing_memberships_skip_the_default_channel(self):
        self.log.receive(LOCAL, {"type": "channel/join", "content": {"channel": "dev"}})
        await self.state.initialize()
        self.assertEqual(self.state.get_joined_channels(), ["dev"])
        self.assertNotIn("default", self.state.channels)
        self.assertEqual(self.state.get_current_channel(), STATUS_CHANNEL)

    async def test_loads_roster_topics_archives_and_flags(self):
        self.log.add_peer(PEER, "bob")
        self.log.receive(PEER, {"type": "channel/join", "content": {"channel": "dev"}})
        self.log.receive(PEER, {"type": "channel/topic", "content": {"channel": "dev", "text": "hacking"}})
        self.log.receive(PEER, {"type": "channel/join", "content": {"channel": "old"}})
        self.log.receive(PEER, {"type": "channel/archive", "content": {"channel": "old"}})
        self.log.apply_flags(LOCAL, PEER, "@", ["mod"], "add")

        await self.state.initialize()

        peer = self.state.get_users()[PEER]
        self.assertEqual(peer.name, "bob")
        self.assertTrue(peer.is_moderator())
        self.assertEqual(self.state.get_topic("dev"), "hacking")
        self.assertEqual([user.key for user in self.state.get_channel_members("dev")], [PEER])
        self.assertTrue(self.state.is_channel_archived("old"))
        self.assertNotIn("old", self.state.get_channels())
        self.assertIn("old", self.state.get_channels(include_archived=True))
        self.assertTrue(self.state.get_local_user().local)
        self.assertEqual(self.state.get_local_user().key, LOCAL)

    async def test_restores_joined_private_messages_from_settings(self):
        self.settings.write(CABAL, {"joined_private_messages": [PEER]})
        await self.state.initialize()
        self.assertTrue(self.state.is_channel_private(PEER))
        self.assertTrue(self.state.get_channel(PEER).joined)

    async def test_events_during_bootstrap_are_applied_after_ready(self):
        log = GatedLog(CABAL, local_key=LOCAL, now_func=self.clock.now)
        state = CabalState(log, now_func=self.clock.now)
        seen = []
        state.on("started-peering", seen.append)

        task = asyncio.ensure_future(state.initialize())
        for _ in range(5):
            await asyncio.sleep(0)
        self.assertIs(state.lifecycle, Lifecycle.BOOTSTRAPPING)

        log.peer_connected(PEER)
        self.assertEqual(seen, [])

        log.gate.set()
        await task
        self.assertEqual(len(seen), 1)
        self.assertTrue(state.get_users()[PEER].online)
        await state.destroy()

    async def test_message_in_a_channel_created_during_bootstrap_is_kept(self):
        log = GatedLog(CABAL, local_key=LOCAL, now_func=self.clock.now)
        state = CabalState(log, now_func=self.clock.now)
        seen = []
        state.on("new-message", seen.append)

        task = asyncio.ensure_future(state.initialize())
        for _ in range(5):
            await asyncio.sleep(0)
        self.assertIs(state.lifecycle, Lifecycle.BOOTSTRAPPING)

        log.receive(PEER, _chat("fresh", "hello"))
        self.assertEqual(seen, [])

        log.gate.set()
        await task
        self.assertEqual([event.payload["channel"] for event in seen], ["fresh"])
        self.assertEqual(state.get_channel("fresh").get_new_message_count(), 1)
        await state.destroy()

    async def test_waits_for_the_log_to_be_ready(self):
        log = SlowReadyLog(CABAL, local_key=LOCAL, now_func=self.clock.now)
        state = CabalState(log, now_func=self.clock.now)

        task = asyncio.ensure_future(state.initialize())
        for _ in range(5):
            await asyncio.sleep(0)
        self.assertIs(state.lifecycle, Lifecycle.BOOTSTRAPPING)
        self.assertEqual(log.calls, [])

        log.ready_gate.set()
        await task
        self.assertEqual(log.calls, ["list_channels"])
        self.assertIs(state.lifecycle, Lifecycle.READY)
        await state.destroy()

    async def test_log_not_ready_leaves_the_state_uninitialized(self):
        self.log.fail_next("ready")
        with self.assertRaises(UpstreamFailure):
            await self.state.initialize()
        self.assertIs(self.state.lifecycle, Lifecycle.UNINITIALIZED)
        self.assertEqual(self.log.events.listener_count(), 0)

        await self.state.initialize()
        self.assertIs(self.state.lifecycle, Lifecycle.READY)

    async def test_failed_bootstrap_propagates_and_detaches(self):
        self.log.fail_next("list_channels")
        with self.assertRaises(UpstreamFailure):
            await self.state.initialize()
        self.assertIs(self.state.lifecycle, Lifecycle.UNINITIALIZED)
        self.assertEqual(self.log.events.listener_count(), 0)

    async def test_operations_before_ready_are_not_available(self):
        with self.assertRaises(NotAvailable):
            await self.state.publish_message({"content": {"channel": "dev", "text": "early"}})


class PublishTests(CabalStateTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.state.initialize()

    async def test_publish_defaults_to_the_focused_channel(self):
        published = await self.state.publish_message({"content": {"text": "hello"}})
        self.assertEqual(published["value"]["content"]["channel"], "default")
        self.assertEqual(published["value"]["type"], "chat/text")
        page = await self.state.get_channel("default").get_page(limit=10)
        self.assertIn("hello", [m["value"]["content"].get("text") for m in page])
        self.assertEqual(len(self.emitted("publish-message")), 1)

    async def test_publish_to_status_is_rejected(self):
        with self.assertRaises(InvalidChannelName):
            await self.state.publish_message({"content": {"channel": STATUS_CHANNEL, "text": "no"}})
        self.state.focus_channel(STATUS_CHANNEL)
        with self.assertRaises(InvalidChannelName):
            await self.state.publish_message({"content": {"text": "still no"}})

    async def test_key_shaped_channel_is_redirected_to_a_private_message(self):
        await self.state.publish_message({"content": {"channel": PEER, "text": "psst"}})

        self.assertEqual(await self.log.list_private_messages(), [PEER])
        self.assertNotIn(PEER, await self.log.list_channels())
        self.assertTrue(self.state.is_channel_private(PEER))
        self.assertTrue(self.state.get_channel(PEER).joined)
        self.assertEqual(self.state.get_current_channel(), PEER)
        self.assertEqual(self.settings.get(CABAL)["joined_private_messages"], [PEER])
        self.assertEqual(self.emitted("publish-message"), [])
        self.assertEqual(len(self.emitted("publish-private-message")), 1)

    async def test_private_redirect_rejects_non_chat_types(self):
        with self.assertRaises(UnsupportedMessageType):
            await self.state.publish_message({"type": "poll/create", "content": {"channel": PEER, "text": "?"}})
        self.assertEqual(await self.log.list_private_messages(), [])
        self.assertNotIn(PEER, self.state.channels)

    async def test_private_message_to_malformed_key_is_rejected(self):
        with self.assertRaises(InvalidChannelName):
            await self.state.publish_private_message({"content": {"text": "hi"}}, "not-a-key")

    async def test_failed_private_publish_leaves_state_untouched(self):
        self.log.fail_next("publish_private")
        with self.assertRaises(UpstreamFailure):
            await self.state.publish_private_message({"content": {"text": "hi"}}, PEER)
        self.assertNotIn(PEER, self.state.channels)
        self.assertEqual(self.settings.get(CABAL)["joined_private_messages"], [])
        self.assertEqual(self.state.get_current_channel(), "default")

    async def test_incoming_private_message_is_keyed_to_the_author(self):
        self.log.receive(PEER, {"type": "chat/text", "private": True, "content": {"channel": LOCAL, "text": "hey"}})

        self.assertNotIn(LOCAL, self.state.channels)
        channel = self.state.get_channel(PEER)
        self.assertTrue(channel.is_private)
        self.assertTrue(channel.joined)
        self.assertEqual(channel.get_new_message_count(), 1)
        self.assertEqual(self.emitted("private-message")[0]["channel"], PEER)
        self.assertIn(PEER, self.state.get_users())

    async def test_publish_nick_and_topic(self):
        await self.state.publish_nick("alice")
        await self.state.flush()
        self.assertEqual(self.state.get_local_name(), "alice")
        self.assertEqual(self.emitted("user-updated")[-1]["key"], LOCAL)

        await self.state.publish_channel_topic("default", "welcome")
        self.assertEqual(self.state.get_topic(), "welcome")
        self.assertEqual(self.emitted("topic"), [{"channel": "default", "topic": "welcome"}])

        with self.assertRaises(InvalidChannelName):
            await self.state.publish_channel_topic(STATUS_CHANNEL, "nope")

    async def test_topic_on_private_channel_is_rejected(self):
        self.log.receive(PEER, {"type": "chat/text", "private": True, "content": {"channel": LOCAL, "text": "hey"}})
        with self.assertRaises(InvalidChannelName):
            await self.state.publish_channel_topic(PEER, "secret")


class ChannelMembershipTests(CabalStateTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.state.initialize()

    async def test_join_and_leave_report_real_transitions(self):
        self.assertTrue(await self.state.join_channel("dev"))
        self.assertFalse(await self.state.join_channel("dev"))
        self.assertTrue(await self.state.leave_channel("dev"))
        self.assertFalse(await self.state.leave_channel("dev"))
        self.assertEqual(
            [p for p in self.emitted("channel-leave") if p["channel"] == "dev"],
            [{"channel": "dev", "key": LOCAL, "isLocal": True}],
        )

    async def test_reserved_names_cannot_be_joined(self):
        for name in (STATUS_CHANNEL, "!secret", "@", ""):
            with self.assertRaises(InvalidChannelName):
                await self.state.join_channel(name)
        with self.assertRaises(InvalidChannelName):
            await self.state.join_channel(PEER)

    async def test_leave_errors(self):
        with self.assertRaises(InvalidChannelName):
            await self.state.leave_channel(STATUS_CHANNEL)
        with self.assertRaises(NotFound):
            await self.state.leave_channel("nowhere")

    async def test_failed_join_leaves_state_untouched(self):
        self.log.fail_next("publish")
        with self.assertRaises(UpstreamFailure):
            await self.state.join_channel("dev")
        self.assertNotIn("dev", self.state.channels)
        self.assertEqual(self.state.get_current_channel(), "default")

    async def test_leaving_focused_channel_moves_focus_to_a_neighbour(self):
        await self.state.join_channel("dev")
        self.assertEqual(self.state.get_current_channel(), "dev")

        await self.state.leave_channel()
        self.assertEqual(self.state.get_current_channel(), "default")
        self.assertTrue(self.state.get_channel("default").focused)
        self.assertFalse(self.state.get_channel("dev").focused)

        await self.state.leave_channel()
        self.assertEqual(self.state.get_current_channel(), STATUS_CHANNEL)

    async def test_only_one_channel_is_focused(self):
        await self.state.join_channel("dev")
        self.state.focus_channel("default")
        focused = [name for name, details in self.state.channels.items() if details.focused]
        self.assertEqual(focused, ["default"])
        with self.assertRaises(NotFound):
            self.state.focus_channel("nowhere")

    async def test_focus_marks_read_unless_asked_to_keep_unread(self):
        await self.state.join_channel("dev")
        self.log.receive(PEER, _chat("default", "one"))
        self.assertEqual(self.state.get_channel("default").get_new_message_count(), 1)

        self.state.focus_channel("default", keep_unread=True)
        self.assertEqual(self.state.get_channel("default").get_new_message_count(), 1)
        self.state.focus_channel("dev")
        self.state.focus_channel("default")
        self.assertEqual(self.state.get_channel("default").get_new_message_count(), 0)

    async def test_remote_membership_changes(self):
        self.log.receive(PEER, {"type": "channel/join", "content": {"channel": "default"}})
        self.assertIn(PEER, self.state.get_channel("default").get_members())
        self.log.receive(PEER, {"type": "channel/leave", "content": {"channel": "default"}})
        self.assertNotIn(PEER, self.state.get_channel("default").get_members())
        self.assertEqual(self.emitted("channel-leave"), [{"channel": "default", "key": PEER, "isLocal": False}])

    async def test_new_remote_channel_is_tracked(self):
        self.log.receive(PEER, _chat("random", "first!"))
        self.assertEqual(self.emitted("new-channel")[-1], {"channel": "random"})
        self.assertEqual(self.state.get_channel("random").get_new_message_count(), 1)

    async def test_public_message_to_key_shaped_channel_is_ignored(self):
        self.log.receive(PEER, _chat(OTHER, "impersonation"))
        self.assertNotIn(OTHER, self.state.channels)
        self.assertEqual(self.emitted("new-message"), [])

    async def test_get_channels_lists_status_then_private_then_public(self):
        await self.state.join_channel("dev")
        self.log.receive(PEER, {"type": "chat/text", "private": True, "content": {"channel": LOCAL, "text": "hi"}})
        self.assertEqual(self.state.get_channels(include_pm=True), [STATUS_CHANNEL, PEER, "default", "dev"])
        self.assertEqual(self.state.get_channels(), [STATUS_CHANNEL, "default", "dev"])

        self.log.apply_flags(LOCAL, PEER, "@", ["hide"], "add")
        self.assertEqual(self.state.get_channels(include_pm=True), [STATUS_CHANNEL, "default", "dev"])
        self.assertEqual(self.state.get_private_message_list(), [])

    async def test_leaving_a_private_conversation(self):
        self.log.receive(PEER, {"type": "chat/text", "private": True, "content": {"channel": LOCAL, "text": "hi"}})
        self.state.focus_channel(PEER)
        self.assertTrue(await self.state.leave_channel(PEER))
        self.assertFalse(self.state.get_channel(PEER).joined)
        self.assertEqual(self.state.get_current_channel(), STATUS_CHANNEL)
        self.assertEqual(self.settings.get(CABAL)["joined_private_messages"], [])


class ArchiveTests(CabalStateTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.state.initialize()
        await self.state.join_channel("dev")

    async def test_local_archive_and_unarchive(self):
        self.assertTrue(await self.state.archive_channel("dev", "done"))
        self.assertTrue(self.state.is_channel_archived("dev"))
        self.assertFalse(await self.state.archive_channel("dev"))
        self.assertEqual(
            self.emitted("channel-archive"), [{"channel": "dev", "reason": "done", "key": LOCAL, "isLocal": True}]
        )
        self.assertTrue(await self.state.unarchive_channel("dev"))
        self.assertFalse(self.state.is_channel_archived("dev"))

    async def test_reserved_and_private_channels_cannot_be_archived(self):
        with self.assertRaises(InvalidChannelName):
            await self.state.archive_channel(STATUS_CHANNEL)
        self.log.receive(PEER, {"type": "chat/text", "private": True, "content": {"channel": LOCAL, "text": "hi"}})
        with self.assertRaises(InvalidChannelName):
            await self.state.archive_channel(PEER)
        with self.assertRaises(NotFound):
            await self.state.archive_channel("nowhere")

    async def test_remote_archive_requires_moderation_rights(self):
        self.log.receive(PEER, {"type": "channel/archive", "content": {"channel": "dev"}})
        self.assertFalse(self.state.is_channel_archived("dev"))

        self.log.apply_flags(LOCAL, PEER, "dev", ["mod"], "add")
        self.log.receive(PEER, {"type": "channel/archive", "content": {"channel": "dev", "reason": "stale"}})
        self.assertTrue(self.state.is_channel_archived("dev"))
        self.assertEqual(
            self.emitted("channel-archive"), [{"channel": "dev", "reason": "stale", "key": PEER, "isLocal": False}]
        )


class MessageEventTests(CabalStateTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.state.initialize()
        await self.state.publish_nick("alice")
        await self.state.flush()

    async def test_mentions_are_recorded_only_while_unfocused(self):
        self.log.receive(PEER, _chat("default", "alice: while focused"))
        self.assertEqual(self.state.get_channel("default").get_mentions(), [])

        self.state.focus_channel(STATUS_CHANNEL)
        self.log.receive(PEER, _chat("default", "hey alice"))
        self.log.receive(PEER, _chat("default", "  alice!  "))
        self.log.receive(PEER, _chat("default", "alice waves", type="chat/emote"))

        channel = self.state.get_channel("default")
        self.assertEqual(channel.get_new_message_count(), 3)
        self.assertEqual([mention.direct for mention in channel.get_mentions()], [False, True])

        self.state.focus_channel("default")
        self.assertEqual(channel.get_new_message_count(), 0)
        self.assertEqual(channel.get_mentions(), [])

    async def test_new_message_event_payload(self):
        self.log.receive(PEER, _chat("default", "hi"))
        payload = self.emitted("new-message")[-1]
        self.assertEqual(payload["channel"], "default")
        self.assertEqual(payload["author"].key, PEER)
        self.assertEqual(payload["message"]["value"]["content"]["text"], "hi")

    async def test_profile_updates_are_fetched(self):
        self.log.receive(PEER, {"type": "about", "content": {"name": "bob"}})
        await self.state.flush()
        self.assertEqual(self.state.get_users()[PEER].name, "bob")
        self.assertEqual(self.emitted("user-updated")[-1]["key"], PEER)

    async def test_peer_presence(self):
        self.log.peer_connected(PEER)
        self.assertTrue(self.state.get_users()[PEER].online)
        self.log.peer_dropped(PEER)
        self.assertFalse(self.state.get_users()[PEER].online)
        self.assertEqual(len(self.emitted("started-peering")), 1)
        self.assertEqual(len(self.emitted("stopped-peering")), 1)

    async def test_listener_failure_is_reported_as_error_event(self):
        def boom(event):
            raise RuntimeError("subscriber exploded")

        self.state.on("topic", boom)
        with self.assertLogs("cabal_client.cabal", level="ERROR"):
            self.log.receive(PEER, {"type": "channel/topic", "content": {"channel": "default", "text": "x"}})
        self.assertEqual(self.emitted("error")[-1]["message"], "subscriber exploded")
        self.assertEqual(self.state.get_topic("default"), "x")

    async def test_status_messages(self):
        message = self.state.add_status_message("hello there")
        self.assertEqual(message["key"], "default")
        self.assertEqual(message["value"]["content"]["text"], "hello there")
        self.assertIn(message, self.state.get_channel("default").virtual_messages)

        self.state.clear_virtual_messages("default")
        self.assertEqual(self.state.get_channel("default").virtual_messages, [])
        with self.assertRaises(NotFound):
            self.state.add_status_message("lost", "nowhere")

    async def test_status_message_leaves_the_callers_dict_alone(self):
        message = {"value": {"type": "status", "content": {"text": "mine"}}}
        stored = self.state.add_status_message(message, "default")
        self.assertEqual(message, {"value": {"type": "status", "content": {"text": "mine"}}})
        self.assertEqual(stored["key"], "default")
        self.assertIn("timestamp", stored["value"])

    async def test_command_response_sequences_its_events(self):
        response = self.state.responder("nick")
        response.info("working")
        response.info({"text": "still working"}, {"extra": 1})
        response.end()

        infos = self.emitted("info")
        self.assertEqual([info["meta"]["seq"] for info in infos], [0, 1])
        self.assertEqual(infos[1]["extra"], 1)
        end = self.emitted("end")[0]
        self.assertEqual(end, {"uid": response.uid, "command": "nick", "seq": 2})

        response.error(ValueError("bad"))
        self.assertEqual(self.emitted("error")[-1]["command"], "nick")


class ModerationEventTests(CabalStateTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.log.add_peer(PEER, "bob")
        await self.state.initialize()

    def _status_texts(self, channel):
        return [m["value"]["content"]["text"] for m in self.state.get_channel(channel).virtual_messages]

    async def test_local_flag_change_is_narrated_in_status_and_focused_channel(self):
        await self.state.moderation.hide(PEER, reason="spam")

        self.assertTrue(self.state.get_users()[PEER].is_hidden())
        expected = f"{LOCAL[:8]} hid bob spam"
        self.assertEqual(self._status_texts(STATUS_CHANNEL), [expected])
        self.assertEqual(self._status_texts("default"), [expected])
        self.assertEqual(self.emitted("user-updated")[-1]["key"], PEER)

    async def test_unprivileged_flag_change_applies_silently(self):
        self.log.apply_flags(OTHER, PEER, "@", ["mod"], "add")
        self.assertTrue(self.state.get_users()[PEER].is_moderator())
        self.assertEqual(self._status_texts(STATUS_CHANNEL), [])
        self.assertEqual(self.emitted("user-updated")[-1]["key"], PEER)


class DestroyTests(CabalStateTestCase):
    async def test_destroy_is_idempotent_and_detaches_every_listener(self):
        await self.state.initialize()
        self.assertGreater(self.log.events.listener_count(), 0)

        await self.state.destroy()
        await self.state.destroy()

        self.assertEqual(self.log.events.listener_count(), 0)
        self.assertTrue(self.log.closed)
        self.assertIs(self.state.lifecycle, Lifecycle.DESTROYED)

    async def test_mutations_after_destroy_are_not_available(self):
        await self.state.initialize()
        await self.state.destroy()
        with self.assertRaises(NotAvailable):
            await self.state.publish_message({"content": {"text": "late"}})
        with self.assertRaises(NotAvailable):
            await self.state.join_channel("dev")
        with self.assertRaises(NotAvailable):
            self.state.add_status_message("late")

    async def _destroy_while_held(self, log, state, operation):
        log.holding = True
        task = asyncio.ensure_future(operation)
        for _ in range(3):
            await asyncio.sleep(0)
        await state.destroy()
        log.release.set()
        return await task

    async def test_join_in_flight_during_destroy_is_a_no_op(self):
        log = HeldPublishLog(CABAL, local_key=LOCAL, now_func=self.clock.now)
        state = CabalState(log, now_func=self.clock.now)
        await state.initialize()

        joined = await self._destroy_while_held(log, state, state.join_channel("newchan"))

        self.assertFalse(joined)
        self.assertEqual(log.events.listener_count(), 0)
        self.assertEqual(state.get_current_channel(), "default")

    async def test_private_message_in_flight_during_destroy_is_a_no_op(self):
        log = HeldPublishLog(CABAL, local_key=LOCAL, now_func=self.clock.now)
        state = CabalState(log, now_func=self.clock.now)
        await state.initialize()

        published = await self._destroy_while_held(
            log, state, state.publish_private_message({"content": {"text": "psst"}}, PEER)
        )

        self.assertEqual(published["value"]["content"]["channel"], PEER)
        self.assertEqual(log.events.listener_count(), 0)
        self.assertEqual(state.get_current_channel(), "default")

    async def test_events_after_destroy_are_ignored(self):
        await self.state.initialize()
        await self.state.destroy()
        before = len(self.events)
        self.log.receive(PEER, _chat("default", "ghost"))
        self.assertEqual(len(self.events), before)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
