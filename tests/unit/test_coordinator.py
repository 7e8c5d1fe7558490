"""
tests/unit/test_coordinator.py — Turn-taking coordinator scenarios

End-to-end over the real session, capture engine, queue and log, with fake
transport / audio / radio adapters and a VirtualClock.

Test groups
-----------
  Online         — speech → audioMessage → aiResponse → IDLE, recognizer
                   failure, stale socket found before a send
  Offline        — speech / text queued (also on a failed send), drained
                   in order after reconnect
  Inbound        — server transcript, error notices, malformed frames
  Playback       — SPEAKING until the clip finishes, never over a recording
  Auto-listen    — re-arms after a reply, respects toggle and audio route
  Housekeeping   — clear, history restore, delivery failures
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import pytest

from airassist.audio.capture import AudioCaptureEngine, RecordingState
from airassist.audio.clip import clip_to_base64, encode_clip
from airassist.conversation.coordinator import (
    CONNECTED_NOTICE,
    DISCONNECTED_NOTICE,
    DRAINING_NOTICE,
    OFFLINE_NOTICE,
    OFFLINE_PLACEHOLDER,
    VOICE_PLACEHOLDER,
    ConversationCoordinator,
)
from airassist.conversation.log import CONVERSATION_HISTORY_KEY
from airassist.conversation.models import (
    ConversationEventKind,
    ConversationState,
    DeliveryState,
    Message,
    Sender,
)
from airassist.core.clock import VirtualClock
from airassist.exceptions import MicrophoneUnavailableError
from airassist.network.protocol import Identity
from airassist.network.session import NetworkSessionManager, SessionState
from airassist.peripheral.manager import DeviceConnectionManager
from airassist.peripheral.models import Device
from airassist.storage.kv_store import MemoryKeyValueStore
from fakes import (
    FakeMicrophone,
    FakeRadio,
    FakeRecognizer,
    FakeSpeaker,
    FakeTransport,
    quiet_frame,
    tone_frame,
)

ENDPOINT = "ws://assistant.test/ws"
HEADSET = Device("AA:BB:CC:DD:EE:01", "AirBuds")


# ─────────────────────────────────────────────────────────────────────────────
# Rig
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class Rig:
    coordinator: ConversationCoordinator
    session: NetworkSessionManager
    capture: AudioCaptureEngine
    transport: FakeTransport
    mic: FakeMicrophone
    speaker: FakeSpeaker
    recognizer: FakeRecognizer
    store: MemoryKeyValueStore
    clock: VirtualClock
    devices: Optional[DeviceConnectionManager] = None

    async def open(self) -> None:
        await self.session.open(ENDPOINT)
        await self.clock.settle()

    async def speak(self, frames: int = 3) -> None:
        """Record loud frames, then let the silence window elapse."""
        assert await self.coordinator.start_listening()
        for _ in range(frames):
            self.mic.push(tone_frame(0.5))
        await self.clock.advance(2.0)

    def respond(self, **fields) -> None:
        self.transport.current.push({"type": "aiResponse", **fields})

    def texts(self) -> list[tuple[Sender, str]]:
        return [(m.sender, m.text) for m in self.coordinator.log]

    def user_messages(self) -> list[Message]:
        return [m for m in self.coordinator.log if m.sender is Sender.USER]

    async def shutdown(self) -> None:
        await self.coordinator.stop()
        await self.capture.shutdown()
        if self.devices is not None:
            await self.devices.shutdown()
        await self.session.close()


async def _rig(
    transcript: str = "turn on the lights",
    auto_listen: bool = False,
    online: bool = True,
    store: Optional[MemoryKeyValueStore] = None,
    with_headset: bool = False,
    fail_sends: bool = False,
) -> Rig:
    clock = VirtualClock()
    transport = FakeTransport(fail_sends=fail_sends)
    session = NetworkSessionManager(transport, clock=clock)
    mic, speaker = FakeMicrophone(), FakeSpeaker()
    recognizer = FakeRecognizer(transcript)
    capture = AudioCaptureEngine(mic, speaker, recognizer=recognizer, clock=clock, release_s=0.0)
    store = store if store is not None else MemoryKeyValueStore()
    devices = None
    if with_headset:
        devices = DeviceConnectionManager(FakeRadio([HEADSET]), store=store, clock=clock)
    coordinator = ConversationCoordinator(
        session,
        capture,
        Identity("u-1", "Ada", "nova"),
        store=store,
        devices=devices,
        clock=clock,
        silence_threshold=0.02,
        silence_duration_s=2.0,
        auto_listen=auto_listen,
        auto_listen_delay_s=1.0,
    )
    await coordinator.start()
    rig = Rig(coordinator, session, capture, transport, mic, speaker, recognizer, store, clock, devices)
    if online:
        await rig.open()
    return rig


def _clip_b64() -> str:
    return clip_to_base64(encode_clip(tone_frame(0.3, 1600), 16000, 1))


# ─────────────────────────────────────────────────────────────────────────────
# Online
# ─────────────────────────────────────────────────────────────────────────────

class TestOnline:

    @pytest.mark.asyncio
    async def test_speech_sent_and_text_reply_returns_to_idle(self):
        rig = await _rig()
        try:
            await rig.speak()
            assert rig.coordinator.state is ConversationState.AWAITING_RESPONSE

            sent = rig.transport.current.sent_of_type("audioMessage")
            assert len(sent) == 1
            user = rig.user_messages()[0]
            assert user.delivery_state is DeliveryState.SENT
            assert user.text == "turn on the lights"
            assert sent[0]["messageId"] == user.id
            assert sent[0]["transcription"] == "turn on the lights"
            assert sent[0]["userId"] == "u-1"
            assert sent[0]["voice"] == "nova"
            assert sent[0]["audio"]

            rig.respond(text="Done", messageId=user.id)
            await rig.clock.settle()

            assert rig.coordinator.state is ConversationState.IDLE
            assert user.delivery_state is DeliveryState.DELIVERED
            assert rig.texts() == [
                (Sender.SYSTEM, CONNECTED_NOTICE),
                (Sender.USER, "turn on the lights"),
                (Sender.ASSISTANT, "Done"),
            ]
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_voice_placeholder_without_transcript(self):
        rig = await _rig(transcript="")
        try:
            await rig.speak()
            assert rig.user_messages()[0].text == VOICE_PLACEHOLDER
            assert rig.transport.current.sent_of_type("audioMessage")[0]["transcription"] == ""
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_recognizer_failure_sends_last_partial(self):
        rig = await _rig(transcript="")
        rig.recognizer.partials = ["turn on", "turn on the"]
        rig.recognizer.finish_error = RuntimeError("CTranslate2 inference failed")
        try:
            await rig.speak()
            sent = rig.transport.current.sent_of_type("audioMessage")
            assert [m["transcription"] for m in sent] == ["turn on the"]
            assert rig.coordinator.state is ConversationState.AWAITING_RESPONSE
            assert rig.capture.state is RecordingState.IDLE

            rig.respond(text="Done", messageId=sent[0]["messageId"])
            await rig.clock.settle()
            assert rig.coordinator.state is ConversationState.IDLE
            assert await rig.coordinator.start_listening()
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_stale_socket_detected_before_send(self):
        rig = await _rig()
        try:
            stale = rig.transport.current
            stale.go_stale()
            message = await rig.coordinator.send_text("hello")
            assert message.delivery_state is DeliveryState.QUEUED
            assert stale.sent_of_type("textMessage") == []

            await rig.clock.settle()
            assert rig.session.state is SessionState.RECONNECTING
            await rig.clock.advance(5.0)
            assert rig.transport.current is not stale
            sent = rig.transport.current.sent_of_type("textMessage")
            assert [m["messageId"] for m in sent] == [message.id]
            assert message.delivery_state is DeliveryState.SENT
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_text_message_sent(self):
        rig = await _rig()
        try:
            message = await rig.coordinator.send_text("  what's the weather  ")
            assert message.text == "what's the weather"
            assert message.delivery_state is DeliveryState.SENT
            sent = rig.transport.current.sent_of_type("textMessage")
            assert [m["text"] for m in sent] == ["what's the weather"]
            assert rig.coordinator.state is ConversationState.AWAITING_RESPONSE
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_blank_text_ignored(self):
        rig = await _rig()
        try:
            assert await rig.coordinator.send_text("   ") is None
            assert rig.transport.current.sent == []
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_manual_stop_sends_immediately(self):
        rig = await _rig()
        try:
            await rig.coordinator.start_listening()
            rig.mic.push(tone_frame(0.5))
            message = await rig.coordinator.stop_listening()
            assert message.delivery_state is DeliveryState.SENT
            assert len(rig.transport.current.sent_of_type("audioMessage")) == 1
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_empty_or_quiet_capture_returns_to_idle_without_sending(self):
        rig = await _rig(transcript="")
        try:
            await rig.coordinator.start_listening()
            assert await rig.coordinator.stop_listening() is None
            assert rig.coordinator.state is ConversationState.IDLE

            await rig.coordinator.start_listening()
            rig.mic.push(quiet_frame())
            await rig.clock.advance(2.0)
            assert rig.coordinator.state is ConversationState.IDLE
            assert rig.transport.current.sent_of_type("audioMessage") == []
            assert rig.user_messages() == []
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_listen_ignored_unless_idle(self):
        rig = await _rig()
        try:
            await rig.speak()
            assert rig.coordinator.state is ConversationState.AWAITING_RESPONSE
            assert await rig.coordinator.start_listening() is False
            assert rig.mic.open_count == 1
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_microphone_unavailable_propagates(self):
        rig = await _rig()
        rig.mic.available = False
        try:
            with pytest.raises(MicrophoneUnavailableError):
                await rig.coordinator.start_listening()
            assert rig.coordinator.state is ConversationState.IDLE
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_listening_discards(self):
        rig = await _rig()
        try:
            await rig.coordinator.start_listening()
            rig.mic.push(tone_frame())
            await rig.coordinator.cancel_listening()
            assert rig.coordinator.state is ConversationState.IDLE
            await rig.clock.advance(5.0)
            assert rig.transport.current.sent_of_type("audioMessage") == []
        finally:
            await rig.shutdown()


# ─────────────────────────────────────────────────────────────────────────────
# Offline
# ─────────────────────────────────────────────────────────────────────────────

class TestOffline:

    @pytest.mark.asyncio
    async def test_speech_queued_then_drained_on_open(self):
        rig = await _rig(online=False)
        try:
            await rig.speak()
            user = rig.user_messages()[0]
            assert user.delivery_state is DeliveryState.QUEUED
            assert user.text == "turn on the lights"
            assert rig.coordinator.state is ConversationState.IDLE
            assert len(rig.coordinator.queue) == 1
            assert rig.texts()[-1] == (Sender.SYSTEM, OFFLINE_NOTICE)

            await rig.open()
            sent = rig.transport.current.sent_of_type("audioMessage")
            assert [m["messageId"] for m in sent] == [user.id]
            assert user.delivery_state is DeliveryState.SENT
            assert len(rig.coordinator.queue) == 0
            assert rig.texts()[-2:] == [
                (Sender.SYSTEM, CONNECTED_NOTICE),
                (Sender.SYSTEM, DRAINING_NOTICE),
            ]
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_offline_placeholder_without_transcript(self):
        rig = await _rig(transcript="", online=False)
        try:
            await rig.speak()
            assert rig.user_messages()[0].text == OFFLINE_PLACEHOLDER
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_failed_send_while_open_falls_back_to_queue(self):
        rig = await _rig()
        try:
            first = rig.transport.current
            first.fail_sends = True
            await rig.speak()

            user = rig.user_messages()[0]
            assert user.delivery_state is DeliveryState.QUEUED
            assert user.text == "turn on the lights"
            assert len(rig.coordinator.queue) == 1
            assert rig.coordinator.state is ConversationState.IDLE
            assert rig.texts()[-1] == (Sender.SYSTEM, OFFLINE_NOTICE)

            first.drop()
            await rig.clock.settle()
            await rig.clock.advance(5.0)   # reconnect delay
            assert rig.transport.current is not first
            sent = rig.transport.current.sent_of_type("audioMessage")
            assert [m["messageId"] for m in sent] == [user.id]
            assert user.delivery_state is DeliveryState.SENT
            assert len(rig.coordinator.queue) == 0
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_reconnect_drains_in_arrival_order(self):
        rig = await _rig()
        try:
            rig.transport.current.drop()
            await rig.clock.settle()
            assert rig.texts()[-1] == (Sender.SYSTEM, DISCONNECTED_NOTICE)

            first = await rig.coordinator.send_text("first")
            second = await rig.coordinator.send_text("second")
            assert first.delivery_state is DeliveryState.QUEUED
            assert second.delivery_state is DeliveryState.QUEUED
            assert len(rig.coordinator.queue) == 2

            await rig.clock.advance(5.0)   # reconnect delay
            sent = rig.transport.current.sent_of_type("textMessage")
            assert [m["text"] for m in sent] == ["first", "second"]
            assert [m["messageId"] for m in sent] == [first.id, second.id]
            assert first.delivery_state is DeliveryState.SENT
            assert second.delivery_state is DeliveryState.SENT
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_failed_drain_marks_message_failed_without_retry(self):
        rig = await _rig(online=False, fail_sends=True)
        events = rig.coordinator.events()
        try:
            message = await rig.coordinator.send_text("hello")
            await rig.open()
            assert message.delivery_state is DeliveryState.FAILED
            assert len(rig.coordinator.queue) == 0
            updated = [
                e.message.delivery_state for e in events.drain()
                if e.kind is ConversationEventKind.MESSAGE_UPDATED
            ]
            assert updated[-1] is DeliveryState.FAILED
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_queue_survives_restart(self):
        store = MemoryKeyValueStore()
        rig = await _rig(online=False, store=store)
        await rig.coordinator.send_text("remember me")
        await rig.shutdown()

        restarted = await _rig(online=False, store=store)
        try:
            assert len(restarted.coordinator.queue) == 1
            await restarted.open()
            sent = restarted.transport.current.sent_of_type("textMessage")
            assert [m["text"] for m in sent] == ["remember me"]
            restored = restarted.user_messages()[0]
            assert restored.delivery_state is DeliveryState.SENT
        finally:
            await restarted.shutdown()


# ─────────────────────────────────────────────────────────────────────────────
# Inbound
# ─────────────────────────────────────────────────────────────────────────────

class TestInbound:

    @pytest.mark.asyncio
    async def test_server_transcript_overwrites_user_text(self):
        rig = await _rig(transcript="turn of the lice")
        try:
            await rig.speak()
            user = rig.user_messages()[0]
            rig.respond(text="Done", messageId=user.id, transcription="turn off the lights")
            await rig.clock.settle()
            assert user.text == "turn off the lights"
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_error_notice_returns_to_idle(self):
        rig = await _rig()
        try:
            await rig.speak()
            rig.transport.current.push({"type": "error", "message": "quota exceeded"})
            await rig.clock.settle()
            assert rig.texts()[-1] == (Sender.SYSTEM, "Error: quota exceeded")
            assert rig.coordinator.state is ConversationState.IDLE
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_malformed_and_pong_frames_dropped(self):
        rig = await _rig()
        try:
            before = len(rig.coordinator.log)
            rig.transport.current.push("{not json")
            rig.transport.current.push({"type": "pong"})
            rig.transport.current.push({"type": "surprise"})
            await rig.clock.settle()
            assert len(rig.coordinator.log) == before
            assert rig.coordinator.state is ConversationState.IDLE
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_disconnect_while_awaiting_releases_turn(self):
        rig = await _rig()
        try:
            await rig.speak()
            rig.transport.current.drop()
            await rig.clock.settle()
            assert rig.coordinator.state is ConversationState.IDLE
            assert rig.texts()[-1] == (Sender.SYSTEM, DISCONNECTED_NOTICE)
        finally:
            await rig.shutdown()


# ─────────────────────────────────────────────────────────────────────────────
# Playback
# ─────────────────────────────────────────────────────────────────────────────

class TestPlayback:

    @pytest.mark.asyncio
    async def test_speaking_until_clip_finishes(self):
        rig = await _rig()
        try:
            await rig.speak()
            user = rig.user_messages()[0]
            rig.respond(text="Done", messageId=user.id, audioBase64=_clip_b64())
            await rig.clock.settle()

            assert rig.coordinator.state is ConversationState.SPEAKING
            assert len(rig.speaker.played) == 1
            assert await rig.coordinator.start_listening() is False

            rig.speaker.finish()
            await rig.clock.settle()
            assert rig.coordinator.state is ConversationState.IDLE
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_stop_speaking(self):
        rig = await _rig()
        try:
            await rig.coordinator.send_text("read me something")
            rig.respond(text="Once upon a time", audioBase64=_clip_b64())
            await rig.clock.settle()
            await rig.coordinator.stop_speaking()
            await rig.clock.settle()
            assert rig.coordinator.state is ConversationState.IDLE
            assert rig.speaker.stop_count == 1
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_reply_during_recording_is_not_played(self):
        rig = await _rig()
        try:
            await rig.coordinator.start_listening()
            rig.respond(text="late reply", audioBase64=_clip_b64())
            await rig.clock.settle()
            assert rig.coordinator.state is ConversationState.RECORDING
            assert rig.speaker.played == []
            assert rig.texts()[-1] == (Sender.ASSISTANT, "late reply")
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_read_responses_off_skips_audio(self):
        rig = await _rig()
        rig.coordinator.read_responses = False
        try:
            await rig.coordinator.send_text("hi")
            rig.respond(text="hello", audioBase64=_clip_b64())
            await rig.clock.settle()
            assert rig.speaker.played == []
            assert rig.coordinator.state is ConversationState.IDLE
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_undecodable_audio_falls_back_to_text(self):
        rig = await _rig()
        try:
            await rig.coordinator.send_text("hi")
            rig.respond(text="hello", audioBase64="%%%")
            await rig.clock.settle()
            assert rig.coordinator.state is ConversationState.IDLE
            assert rig.texts()[-1] == (Sender.ASSISTANT, "hello")
        finally:
            await rig.shutdown()


# ─────────────────────────────────────────────────────────────────────────────
# Auto-listen
# ─────────────────────────────────────────────────────────────────────────────

class TestAutoListen:

    @pytest.mark.asyncio
    async def test_rearms_after_playback_and_delay(self):
        rig = await _rig(auto_listen=True)
        try:
            await rig.speak()
            rig.respond(text="Done", audioBase64=_clip_b64())
            await rig.clock.settle()
            rig.speaker.finish()
            await rig.clock.settle()
            assert rig.coordinator.state is ConversationState.IDLE

            await rig.clock.advance(0.5)
            assert rig.coordinator.state is ConversationState.IDLE
            await rig.clock.advance(0.5)
            assert rig.coordinator.state is ConversationState.RECORDING
            assert rig.mic.open_count == 2
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_not_rearmed_after_queueing(self):
        rig = await _rig(auto_listen=True, online=False)
        try:
            await rig.speak()
            await rig.clock.advance(3.0)
            assert rig.coordinator.state is ConversationState.IDLE
            assert rig.mic.open_count == 1
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_disabled_toggle_cancels_pending_rearm(self):
        rig = await _rig(auto_listen=True)
        try:
            await rig.coordinator.send_text("hi")
            rig.respond(text="hello")
            await rig.clock.settle()
            rig.coordinator.set_auto_listen(False)
            await rig.clock.advance(2.0)
            assert rig.coordinator.state is ConversationState.IDLE
            assert rig.mic.open_count == 0
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_requires_connected_headset(self):
        rig = await _rig(auto_listen=True, with_headset=True)
        try:
            await rig.coordinator.send_text("hi")
            rig.respond(text="hello")
            await rig.clock.advance(2.0)
            assert rig.mic.open_count == 0

            await rig.devices.start_scan()
            await rig.clock.settle()
            await rig.devices.connect(HEADSET.id)
            await rig.coordinator.send_text("again")
            rig.respond(text="hello again")
            await rig.clock.advance(2.0)
            assert rig.coordinator.state is ConversationState.RECORDING
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_headset_loss_cancels_pending_rearm(self):
        rig = await _rig(auto_listen=True, with_headset=True)
        try:
            await rig.devices.start_scan()
            await rig.clock.settle()
            await rig.devices.connect(HEADSET.id)
            await rig.coordinator.send_text("hi")
            rig.respond(text="hello")
            await rig.clock.settle()
            await rig.devices.disconnect(HEADSET.id)
            await rig.clock.settle()
            await rig.clock.advance(2.0)
            assert rig.mic.open_count == 0
        finally:
            await rig.shutdown()


# ─────────────────────────────────────────────────────────────────────────────
# Housekeeping
# ─────────────────────────────────────────────────────────────────────────────

class TestHousekeeping:

    @pytest.mark.asyncio
    async def test_clear_only_touches_the_log(self):
        rig = await _rig(online=False)
        events = rig.coordinator.events()
        try:
            await rig.coordinator.send_text("queued")
            await rig.coordinator.clear_conversation()
            assert len(rig.coordinator.log) == 0
            assert len(rig.coordinator.queue) == 1
            assert rig.store.raw()[CONVERSATION_HISTORY_KEY] == []
            assert any(e.kind is ConversationEventKind.CLEARED for e in events.drain())
        finally:
            await rig.shutdown()

    @pytest.mark.asyncio
    async def test_history_restored_on_start(self):
        store = MemoryKeyValueStore()
        rig = await _rig(store=store)
        await rig.coordinator.send_text("hello")
        rig.respond(text="hi there")
        await rig.clock.settle()
        await rig.shutdown()

        restarted = await _rig(store=store, online=False)
        try:
            assert [text for _, text in restarted.texts()] == [
                CONNECTED_NOTICE,
                "hello",
                "hi there",
            ]
        finally:
            await restarted.shutdown()

    @pytest.mark.asyncio
    async def test_log_appends_published_in_order(self):
        rig = await _rig(online=False)
        events = rig.coordinator.events()
        try:
            await rig.coordinator.send_text("one")
            await rig.coordinator.send_text("two")
            added = [
                e.message.text for e in events.drain()
                if e.kind is ConversationEventKind.MESSAGE_ADDED
            ]
            assert added == ["one", OFFLINE_NOTICE, "two", OFFLINE_NOTICE]
        finally:
            await rig.shutdown()
