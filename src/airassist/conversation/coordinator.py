"""
conversation/coordinator.py — Turn-taking coordinator

Arbitrates between the session, the capture engine and the peripheral so
that the client never records while speaking, never speaks while
recording, and resumes listening only when idle.

State machine:

    IDLE ──start_listening / auto-listen──► RECORDING
    RECORDING ──silence / stop_listening──► AWAITING_RESPONSE
    AWAITING_RESPONSE ──aiResponse with audio──► SPEAKING ──playback done──► IDLE
    AWAITING_RESPONSE ──aiResponse without audio / error / queued──► IDLE

Auto-listen re-arms RECORDING from IDLE only, after auto_listen_delay_s,
and only when an audio route exists (a connected headset, or no headset
manager at all). It never pre-empts AWAITING_RESPONSE or SPEAKING.

Outbound routing:
    session OPEN     → send now, message delivery_state = sent; a stale
                       socket or a failed write falls back to the queue
    otherwise        → offline queue, delivery_state = queued
    on session OPEN  → drain the queue one entry at a time until it is
                       empty or the session drops again

The coordinator only reads subsystem events and calls their public
operations; it never touches their internals.
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional

from airassist.audio.capture import AudioCaptureEngine, CaptureConfig, CaptureResult, PlaybackOutcome
from airassist.audio.clip import clip_from_base64
from airassist.conversation.log import ConversationLog
from airassist.conversation.models import (
    ConversationEvent,
    ConversationEventKind,
    ConversationState,
    DeliveryState,
    Message,
    Sender,
)
from airassist.core.clock import Clock, LoopClock
from airassist.core.completion import Completion
from airassist.core.events import EventChannel, Subscription
from airassist.exceptions import DeliveryError, PlaybackError, ProtocolError
from airassist.network.offline_queue import (
    AudioPayload,
    DrainResult,
    OfflineMessageQueue,
    PendingOutbound,
    TextPayload,
)
from airassist.network.protocol import (
    AiResponse,
    ErrorNotice,
    Identity,
    Pong,
    make_audio_message,
    make_text_message,
    parse_inbound,
)
from airassist.network.session import NetworkSessionManager, SessionEvent, SessionEventKind
from airassist.observability.logger import get_logger
from airassist.peripheral.manager import DeviceConnectionManager, DeviceEvent, DeviceEventKind
from airassist.peripheral.models import ConnectionState
from airassist.storage.kv_store import KeyValueStore

log = get_logger(__name__)

# ── System messages ───────────────────────────────────────────────────────────

CONNECTED_NOTICE     = "Connected to AI assistant"
DISCONNECTED_NOTICE  = "Disconnected from AI assistant"
OFFLINE_NOTICE       = "I'm currently offline. I'll process your message when I reconnect."
DRAINING_NOTICE      = "Processing your offline messages..."
OFFLINE_PLACEHOLDER  = "Message saved for when connection is restored"
VOICE_PLACEHOLDER    = "[voice message]"


class ConversationCoordinator:

    def __init__(
        self,
        session: NetworkSessionManager,
        capture: AudioCaptureEngine,
        identity: Identity,
        conversation_log: Optional[ConversationLog] = None,
        store: Optional[KeyValueStore] = None,
        devices: Optional[DeviceConnectionManager] = None,
        clock: Optional[Clock] = None,
        silence_threshold: float = 0.02,
        silence_duration_s: float = 2.0,
        auto_listen: bool = True,
        auto_listen_delay_s: float = 1.0,
        read_responses: bool = True,
        use_recognizer: bool = True,
    ) -> None:
        self._session = session
        self._capture = capture
        self._devices = devices
        self._clock = clock or LoopClock()
        self.identity = identity
        self.log = conversation_log or ConversationLog(store)
        self.queue = OfflineMessageQueue(
            session,
            encode=self._wire_message,
            store=store,
            on_failed=self._on_queued_send_failed,
        )

        self.silence_threshold = silence_threshold
        self.silence_duration_s = silence_duration_s
        self.auto_listen_delay_s = auto_listen_delay_s
        self.read_responses = read_responses
        self.use_recognizer = use_recognizer
        self._auto_listen = auto_listen

        self._state = ConversationState.IDLE
        self._events: EventChannel[ConversationEvent] = EventChannel("conversation")
        self._session_sub: Optional[Subscription[SessionEvent]] = None
        self._device_sub: Optional[Subscription[DeviceEvent]] = None
        self._tasks: set[asyncio.Task] = set()
        self._auto_listen_task: Optional[asyncio.Task] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._playback: Optional[Completion[PlaybackOutcome]] = None

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def auto_listen(self) -> bool:
        return self._auto_listen

    def events(self) -> Subscription[ConversationEvent]:
        return self._events.subscribe()

    def audio_route_available(self) -> bool:
        if self._devices is None:
            return True
        return self._devices.state is ConnectionState.CONNECTED

    def _set_state(self, new: ConversationState) -> None:
        if new is self._state:
            return
        old, self._state = self._state, new
        log.info("conversation.state_changed", old=old.value, new=new.value)
        self._events.publish(ConversationEvent(ConversationEventKind.STATE_CHANGED, state=new))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log.error("conversation.task_failed", error=str(error), error_type=type(error).__name__)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Restore persisted state and begin consuming subsystem events."""
        await self.log.load()
        await self.queue.load()
        self._session_sub = self._session.events()
        self._spawn(self._consume_session(self._session_sub))
        if self._devices is not None:
            self._device_sub = self._devices.events()
            self._spawn(self._consume_devices(self._device_sub))
        log.info(
            "conversation.started",
            restored_messages=len(self.log),
            pending=len(self.queue),
            auto_listen=self._auto_listen,
        )

    async def stop(self) -> None:
        for sub in (self._session_sub, self._device_sub):
            if sub is not None:
                sub.close()
        self._session_sub = self._device_sub = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._auto_listen_task = self._drain_task = None
        await self.log.save()

    # ── Log helpers ───────────────────────────────────────────────────────────

    async def _add(self, message: Message) -> Message:
        self.log.append(message)
        self._events.publish(ConversationEvent(ConversationEventKind.MESSAGE_ADDED, message=message))
        await self.log.save()
        return message

    async def _add_system(self, text: str) -> Message:
        return await self._add(Message(text=text, sender=Sender.SYSTEM))

    async def _updated(self, message: Optional[Message]) -> None:
        if message is None:
            return
        self._events.publish(ConversationEvent(ConversationEventKind.MESSAGE_UPDATED, message=message))
        await self.log.save()

    # ── Wire encoding ─────────────────────────────────────────────────────────

    def _wire_message(self, pending: PendingOutbound) -> dict:
        timestamp = int(pending.enqueued_at * 1000)
        if isinstance(pending.payload, AudioPayload):
            return make_audio_message(
                pending.payload.clip_b64,
                pending.payload.transcription,
                self.identity,
                pending.original_message_id,
                timestamp=timestamp,
            )
        return make_text_message(
            pending.payload.text,
            self.identity,
            pending.original_message_id,
            timestamp=timestamp,
        )

    # ── Listening ─────────────────────────────────────────────────────────────

    async def start_listening(self) -> bool:
        """
        Start a recording if idle and nothing is playing.

        Returns False when the request is ignored. MicrophoneUnavailableError
        propagates to the caller after the state is restored to IDLE.
        """
        if self._state is not ConversationState.IDLE or self._capture.is_playing:
            log.debug("conversation.listen_ignored", state=self._state.value)
            return False
        self._cancel_auto_listen()

        self._set_state(ConversationState.RECORDING)
        config = CaptureConfig(
            detect_silence=True,
            silence_threshold_energy=self.silence_threshold,
            inactivity_duration=self.silence_duration_s,
            on_silence=self._on_silence,
            use_recognizer=self.use_recognizer,
        )
        try:
            started = await self._capture.start_capture(config)
        except Exception:
            self._set_state(ConversationState.IDLE)
            raise
        if not started:
            self._set_state(ConversationState.IDLE)
        return started

    def _on_silence(self) -> None:
        self._spawn(self.stop_listening())

    async def stop_listening(self) -> Optional[Message]:
        """Finalize the recording and route it. Returns the user message, if any."""
        if self._state is not ConversationState.RECORDING:
            return None
        self._set_state(ConversationState.AWAITING_RESPONSE)
        try:
            result = await self._capture.stop_capture()
        except Exception:
            self._set_state(ConversationState.IDLE)
            raise
        if result is None or result.is_empty or not result.speech_detected:
            log.info("conversation.empty_capture")
            self._set_state(ConversationState.IDLE)
            return None
        return await self._deliver_audio(result)

    async def cancel_listening(self) -> None:
        if self._state is not ConversationState.RECORDING:
            return
        await self._capture.cancel_capture()
        self._set_state(ConversationState.IDLE)

    # ── Outbound ──────────────────────────────────────────────────────────────

    async def _deliver_audio(self, result: CaptureResult) -> Message:
        transcript = result.transcript.strip()
        online = await self._session.check_connection()
        message = await self._add(
            Message(
                text=transcript or (VOICE_PLACEHOLDER if online else OFFLINE_PLACEHOLDER),
                sender=Sender.USER,
                delivery_state=DeliveryState.SENT if online else DeliveryState.QUEUED,
            )
        )
        pending = PendingOutbound(
            payload=AudioPayload(result.clip_b64, transcript),
            original_message_id=message.id,
            enqueued_at=time.time(),
        )
        if online and await self._session.send(self._wire_message(pending)):
            log.info("conversation.audio_sent", message_id=message.id, duration_s=round(result.duration_s, 2))
            return message

        await self._queue_outbound(message, pending)
        if not transcript:
            await self._updated(self.log.update_text(message.id, OFFLINE_PLACEHOLDER))
        self._set_state(ConversationState.IDLE)
        return message

    async def send_text(self, text: str) -> Optional[Message]:
        """Send a typed message with the same online/offline routing as speech."""
        text = text.strip()
        if not text:
            return None
        online = await self._session.check_connection()
        message = await self._add(
            Message(
                text=text,
                sender=Sender.USER,
                delivery_state=DeliveryState.SENT if online else DeliveryState.QUEUED,
            )
        )
        pending = PendingOutbound(
            payload=TextPayload(text),
            original_message_id=message.id,
            enqueued_at=time.time(),
        )
        if online and await self._session.send(self._wire_message(pending)):
            log.info("conversation.text_sent", message_id=message.id)
            if self._state is ConversationState.IDLE:
                self._set_state(ConversationState.AWAITING_RESPONSE)
            return message

        await self._queue_outbound(message, pending)
        return message

    async def _queue_outbound(self, message: Message, pending: PendingOutbound) -> None:
        if message.delivery_state is not DeliveryState.QUEUED:
            await self._updated(self.log.set_delivery(message.id, DeliveryState.QUEUED))
        await self.queue.enqueue(pending)
        await self._add_system(OFFLINE_NOTICE)

    async def _on_queued_send_failed(self, pending: PendingOutbound, error: DeliveryError) -> None:
        log.warning("conversation.delivery_failed", message_id=pending.original_message_id, error=str(error))
        await self._updated(self.log.set_delivery(pending.original_message_id, DeliveryState.FAILED))

    async def drain_offline_queue(self) -> int:
        """Send queued messages one at a time while the session stays open."""
        if len(self.queue) == 0 or not self._session.is_open:
            return 0
        await self._add_system(DRAINING_NOTICE)
        sent = 0
        while True:
            head = self.queue.peek()
            result = await self.queue.drain_one_if_possible()
            if result is not DrainResult.SENT:
                break
            sent += 1
            await self._updated(self.log.set_delivery(head.original_message_id, DeliveryState.SENT))
        log.info("conversation.queue_drained", sent=sent, remaining=len(self.queue))
        return sent

    # ── Inbound ───────────────────────────────────────────────────────────────

    async def _consume_session(self, sub: Subscription[SessionEvent]) -> None:
        async for event in sub:
            try:
                await self._handle_session_event(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error("conversation.session_event_failed", error=str(e), error_type=type(e).__name__)

    async def _handle_session_event(self, event: SessionEvent) -> None:
        if event.kind is SessionEventKind.OPENED:
            await self._add_system(CONNECTED_NOTICE)
            if self._drain_task is None or self._drain_task.done():
                self._drain_task = self._spawn(self.drain_offline_queue())
        elif event.kind is SessionEventKind.CLOSED:
            await self._add_system(DISCONNECTED_NOTICE)
            if self._state is ConversationState.AWAITING_RESPONSE:
                # The reply to an in-flight message will not arrive on a new connection
                self._set_state(ConversationState.IDLE)
        elif event.kind is SessionEventKind.MESSAGE and event.raw is not None:
            await self.handle_inbound(event.raw)
        elif event.kind is SessionEventKind.ERROR:
            log.debug("conversation.session_error", error=str(event.error))

    async def handle_inbound(self, raw: str) -> None:
        try:
            inbound = parse_inbound(raw)
        except ProtocolError as e:
            log.warning("conversation.bad_frame", error=str(e))
            return

        if isinstance(inbound, Pong):
            return
        if isinstance(inbound, ErrorNotice):
            await self._add_system(f"Error: {inbound.message}")
            if self._state is ConversationState.AWAITING_RESPONSE:
                self._set_state(ConversationState.IDLE)
            return
        await self._handle_response(inbound)

    async def _handle_response(self, response: AiResponse) -> None:
        if response.message_id:
            original = self.log.find(response.message_id)
            if original is not None and original.sender is Sender.USER:
                if response.transcription:
                    self.log.update_text(original.id, response.transcription)
                await self._updated(self.log.set_delivery(original.id, DeliveryState.DELIVERED))

        await self._add(Message(text=response.text, sender=Sender.ASSISTANT))
        log.info(
            "conversation.response",
            message_id=response.message_id,
            has_audio=response.has_audio,
            chars=len(response.text),
        )

        if self._state is ConversationState.RECORDING:
            # Never speak over a live recording
            log.info("conversation.playback_skipped", reason="recording")
            return

        if not (response.has_audio and self.read_responses):
            self._finish_turn()
            return

        try:
            clip = clip_from_base64(response.audio_base64)
        except PlaybackError as e:
            log.warning("conversation.bad_audio", error=str(e))
            self._finish_turn()
            return

        self._set_state(ConversationState.SPEAKING)
        completion = self._capture.play_clip(clip)
        self._playback = completion
        self._spawn(self._await_playback(completion))

    async def _await_playback(self, completion: Completion[PlaybackOutcome]) -> None:
        outcome = await completion
        if completion is not self._playback:
            # Superseded by a newer response
            return
        self._playback = None
        log.debug("conversation.playback_done", outcome=outcome.value)
        if self._state is ConversationState.SPEAKING:
            self._finish_turn()

    def _finish_turn(self) -> None:
        self._set_state(ConversationState.IDLE)
        self.schedule_auto_listen()

    async def stop_speaking(self) -> None:
        if self._state is ConversationState.SPEAKING:
            await self._capture.stop_playback()

    # ── Auto-listen ───────────────────────────────────────────────────────────

    def set_auto_listen(self, enabled: bool) -> None:
        self._auto_listen = enabled
        if not enabled:
            self._cancel_auto_listen()
        log.info("conversation.auto_listen", enabled=enabled)

    def schedule_auto_listen(self) -> None:
        if not self._auto_listen or not self.audio_route_available():
            return
        self._cancel_auto_listen()
        self._auto_listen_task = self._spawn(self._auto_listen_after_delay())

    def _cancel_auto_listen(self) -> None:
        task, self._auto_listen_task = self._auto_listen_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _auto_listen_after_delay(self) -> None:
        await self._clock.sleep(self.auto_listen_delay_s)
        self._auto_listen_task = None
        if (
            self._auto_listen
            and self._state is ConversationState.IDLE
            and self.audio_route_available()
        ):
            try:
                await self.start_listening()
            except Exception as e:
                log.warning("conversation.auto_listen_failed", error=str(e), error_type=type(e).__name__)

    # ── Peripheral ────────────────────────────────────────────────────────────

    async def _consume_devices(self, sub: Subscription[DeviceEvent]) -> None:
        async for event in sub:
            if event.kind is DeviceEventKind.STATE_CHANGED and event.state is not ConnectionState.CONNECTED:
                # Audio route gone: a pending auto-listen must not fire
                self._cancel_auto_listen()
            elif event.kind is DeviceEventKind.ERROR:
                log.info("conversation.device_error", error=str(event.error))

    # ── Housekeeping ──────────────────────────────────────────────────────────

    async def clear_conversation(self) -> None:
        """Empty the log. Session, device and queue state are untouched."""
        self.log.clear()
        await self.log.save()
        self._events.publish(ConversationEvent(ConversationEventKind.CLEARED))
        log.info("conversation.cleared")
