"""
app.py — AIRAssist application wiring

Builds every subsystem explicitly from Settings and hands the pieces to the
conversation coordinator. There are no module-level service singletons;
tests construct the same graph with fakes through AirAssistApp's keyword
arguments.

Startup order:
    1. open the key-value store
    2. apply persisted user overrides (`settings`) and ensure a `userId`
    3. build transport → session, devices → capture, radio → device manager
    4. start the coordinator (restores history and the offline queue)
    5. auto-connect the headset and open the session
"""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any, Optional

from airassist.audio.capture import AudioCaptureEngine
from airassist.audio.devices import Microphone, SoundDeviceMicrophone, SoundDeviceSpeaker, Speaker
from airassist.audio.recognizer import SpeechRecognizer, make_recognizer
from airassist.config.settings import Settings
from airassist.conversation.coordinator import ConversationCoordinator
from airassist.conversation.log import ConversationLog
from airassist.core.clock import Clock, LoopClock
from airassist.exceptions import RecognizerUnavailableError
from airassist.network.protocol import Identity
from airassist.network.session import NetworkSessionManager
from airassist.network.transport import Transport, WebsocketTransport
from airassist.observability.logger import bind_user, clear_user, get_logger
from airassist.peripheral.manager import DeviceConnectionManager
from airassist.peripheral.radio import BluetoothctlRadio, Radio
from airassist.storage.kv_store import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore

log = get_logger(__name__)

SETTINGS_KEY = "settings"
USER_ID_KEY = "userId"


class AirAssistApp:
    """
    Owns the lifetime of every subsystem.

    Any adapter left as None is built from settings: sqlite store,
    websocket transport, sounddevice mic/speaker, faster-whisper recognizer
    and a bluetoothctl radio (unless device.adapter is "none").
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[KeyValueStore] = None,
        transport: Optional[Transport] = None,
        microphone: Optional[Microphone] = None,
        speaker: Optional[Speaker] = None,
        recognizer: Optional[SpeechRecognizer] = None,
        radio: Optional[Radio] = None,
        clock: Optional[Clock] = None,
        ephemeral: bool = False,
    ) -> None:
        self.settings = settings
        self._store = store
        self._transport = transport
        self._microphone = microphone
        self._speaker = speaker
        self._recognizer = recognizer
        self._radio = radio
        self._clock = clock or LoopClock()
        self._ephemeral = ephemeral

        self.store: Optional[KeyValueStore] = None
        self.session: Optional[NetworkSessionManager] = None
        self.capture: Optional[AudioCaptureEngine] = None
        self.devices: Optional[DeviceConnectionManager] = None
        self.coordinator: Optional[ConversationCoordinator] = None
        self.identity: Optional[Identity] = None
        self._started = False

    # ── Startup ───────────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._started:
            return
        self.store = await self._open_store()
        self.settings = self.settings.with_overrides(await self.store.get(SETTINGS_KEY, {}))

        user_id = await self._ensure_user_id()
        self.identity = Identity(
            user_id=user_id,
            user_name=self.settings.user.user_name,
            voice=self.settings.audio.voice,
        )
        bind_user(user_id, self.settings.user.user_name)

        self.session = self._build_session()
        self.capture = self._build_capture()
        self.devices = self._build_devices()
        if self.devices is not None:
            await self.devices.load_history()

        behavior = self.settings.behavior
        self.coordinator = ConversationCoordinator(
            session=self.session,
            capture=self.capture,
            identity=self.identity,
            conversation_log=ConversationLog(
                self.store,
                limit=self.settings.conversation.history_limit,
                persist=behavior.save_history,
            ),
            store=self.store,
            devices=self.devices,
            clock=self._clock,
            silence_threshold=self.settings.audio.effective_silence_threshold,
            silence_duration_s=self.settings.audio.silence_duration_s,
            auto_listen=behavior.auto_listen,
            auto_listen_delay_s=behavior.auto_listen_delay_s,
            read_responses=behavior.read_responses,
            use_recognizer=behavior.use_recognizer,
        )
        await self.coordinator.start()
        self._started = True

        if behavior.auto_connect and self.devices is not None:
            await self.devices.auto_connect()
        await self.session.open(self.settings.server.url)

        log.info(
            "app.started",
            server=self.settings.server.url,
            user_id=user_id,
            ephemeral=self._ephemeral,
            headset=self.devices is not None,
        )

    async def _open_store(self) -> KeyValueStore:
        if self._store is not None:
            return self._store
        if self._ephemeral:
            return MemoryKeyValueStore()
        path = Path(self.settings.storage.sqlite_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        store = SqliteKeyValueStore(str(path))
        await store.init()
        return store

    async def _ensure_user_id(self) -> str:
        if self.settings.user.user_id:
            return self.settings.user.user_id
        user_id = await self.store.get(USER_ID_KEY)
        if not user_id:
            user_id = str(uuid.uuid4())
            await self.store.set(USER_ID_KEY, user_id)
            log.info("app.user_id_generated", user_id=user_id)
        return user_id

    def _build_session(self) -> NetworkSessionManager:
        cfg = self.settings.session
        transport = self._transport or WebsocketTransport(
            connect_timeout_s=self.settings.server.connect_timeout_s
        )
        return NetworkSessionManager(
            transport,
            clock=self._clock,
            ping_interval_s=cfg.ping_interval_s,
            liveness_timeout_s=cfg.liveness_timeout_s,
            reconnect_delay_s=cfg.reconnect_delay_s,
        )

    def _build_capture(self) -> AudioCaptureEngine:
        audio = self.settings.audio
        microphone = self._microphone or SoundDeviceMicrophone(
            sample_rate=audio.sample_rate,
            channels=audio.channels,
            frame_size=audio.frame_size,
            device=audio.mic_device_index,
        )
        speaker = self._speaker or SoundDeviceSpeaker(
            volume=audio.speaker_volume,
            device=audio.output_device_index,
        )
        recognizer = self._recognizer
        if recognizer is None and self.settings.behavior.use_recognizer:
            whisper = self.settings.whisper
            try:
                recognizer = make_recognizer(
                    True,
                    model_name=whisper.model,
                    device=whisper.device,
                    compute_type=whisper.compute_type,
                    language=whisper.language or None,
                )
            except RecognizerUnavailableError as e:
                log.warning("app.recognizer_unavailable", error=str(e))
        return AudioCaptureEngine(
            microphone,
            speaker,
            recognizer=recognizer,
            clock=self._clock,
            sample_rate=audio.sample_rate,
            channels=audio.channels,
        )

    def _build_devices(self) -> Optional[DeviceConnectionManager]:
        radio = self._radio
        if radio is None:
            if self.settings.device.adapter == "none":
                return None
            radio = BluetoothctlRadio(self.settings.device.adapter)
        return DeviceConnectionManager(
            radio,
            store=self.store,
            clock=self._clock,
            scan_timeout_s=self.settings.device.scan_timeout_s,
            history_size=self.settings.device.history_size,
        )

    # ── Settings ──────────────────────────────────────────────────────────────

    async def update_settings(self, overrides: dict[str, Any]) -> Settings:
        """
        Persist user overrides and apply the ones that take effect live.

        Overrides are merged into the stored `settings` record. Audio
        format and server changes apply on next start.
        """
        stored = dict(await self.store.get(SETTINGS_KEY, {}) or {})
        for section, values in overrides.items():
            if isinstance(values, dict):
                stored[section] = {**stored.get(section, {}), **values}
        # Validates before anything is persisted
        new_settings = self.settings.with_overrides(overrides)
        await self.store.set(SETTINGS_KEY, stored)
        self.settings = new_settings

        if self.coordinator is not None:
            behavior = new_settings.behavior
            self.coordinator.set_auto_listen(behavior.auto_listen)
            self.coordinator.read_responses = behavior.read_responses
            self.coordinator.auto_listen_delay_s = behavior.auto_listen_delay_s
            self.coordinator.silence_threshold = new_settings.audio.effective_silence_threshold
            self.coordinator.silence_duration_s = new_settings.audio.silence_duration_s
            self.coordinator.log.persist = behavior.save_history
            self.identity.user_name = new_settings.user.user_name
            self.identity.voice = new_settings.audio.voice
        log.info("app.settings_updated", sections=sorted(overrides))
        return new_settings

    # ── Shutdown ──────────────────────────────────────────────────────────────

    async def shutdown(self) -> None:
        if not self._started:
            return
        self._started = False
        if self.coordinator is not None:
            await self.coordinator.stop()
        if self.capture is not None:
            await self.capture.shutdown()
        if self.session is not None:
            await self.session.close()
        if self.devices is not None:
            await self.devices.shutdown()
        if isinstance(self.store, SqliteKeyValueStore):
            await self.store.close()
        log.info("app.stopped")
        clear_user()
