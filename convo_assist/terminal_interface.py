"""Terminal client: record a conversation and follow its session from the CLI."""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from convo_assist.analysis.http import HttpAnalysis
from convo_assist.capture.engine import CaptureEngine
from convo_assist.channel.session_channel import SessionChannel
from convo_assist.config.config import (
    analysis_config,
    capture_config,
    channel_config,
    server_config,
    transcription_config,
)
from convo_assist.coordinator.session import CoordinatorEvent, Notice, NoticeLevel, SessionCoordinator
from convo_assist.models.data_models import FinalizedAudio, RecorderStatus
from convo_assist.protocol import WS_PATH
from convo_assist.storage.http import HttpStorage
from convo_assist.transcription.service import TranscriptionService

logger = logging.getLogger(__name__)

HELP_TEXT = """Commands:
  s            toggle the current speaker
  p            pause / resume recording
  r            save the last minute of audio to replay.wav
  ask <text>   ask the assistant privately
  todo <text>  add an action item
  q            stop and quit
"""


def websocket_url(server: str) -> str:
    """Map an ``http(s)://host:port`` server root to its session channel URL."""
    base = server.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return base + WS_PATH


class TerminalInterface:
    """Terminal front end for one recording (or observed) session."""

    def __init__(
        self,
        config: Dict[str, Any],
        server: Optional[str] = None,
        input_device: Optional[str] = None,
        compute_device: Optional[str] = None,
        output_path: Optional[Path] = None,
    ):
        """
        Initialize terminal interface.

        Args:
            config: Merged configuration (see ``load_config``)
            server: Server root URL; overrides ``server.api_base_url``
            input_device: Microphone device id (default input if omitted)
            compute_device: Force the speech model device (cpu, cuda, mps)
            output_path: Where to save the finished recording as WAV
        """
        server_cfg = server_config(config)
        channel_cfg = channel_config(config)
        transcription_cfg = transcription_config(config)
        if server:
            server_cfg.api_base_url = server
            channel_cfg.url = websocket_url(server)

        self.input_device = input_device
        self.output_path = output_path
        self.engine = CaptureEngine(capture_config(config))
        self.channel = SessionChannel(channel_cfg)
        self.storage = HttpStorage(server_cfg.api_base_url, timeout=server_cfg.request_timeout)
        self.analyzer = HttpAnalysis(server_cfg.api_base_url, timeout=analysis_config(config).timeout)
        self.transcriber = self._build_transcriber(transcription_cfg, compute_device)
        self.coordinator = SessionCoordinator(
            self.engine,
            self.channel,
            self.storage,
            self.analyzer,
            transcriber=self.transcriber,
        )
        self.coordinator.subscribe(CoordinatorEvent.STATE_CHANGED, self._render)
        self.coordinator.subscribe(CoordinatorEvent.NOTICE, self._print_notice)

        self._stop = asyncio.Event()
        self._printed_messages: Set[Tuple[str, str]] = set()
        self._last_summary = ""
        self._last_topics: List[Tuple[str, int]] = []
        self._last_items: List[Tuple[str, bool]] = []
        self._last_suggestion = ""

    def _build_transcriber(self, config, compute_device: Optional[str]) -> Optional[TranscriptionService]:
        if config.backend.lower() != "whisper":
            logger.info("Transcription disabled (transcription.backend=%s)", config.backend)
            return None
        # torch and transformers are an optional extra
        from convo_assist.transcription.whisper import WhisperBackend

        backend = WhisperBackend.from_config(config, device=compute_device)
        return TranscriptionService(backend, config, source_sr=self.engine.sample_rate)

    # ------------------------------------------------------------------
    # Display
    # ------------------------------------------------------------------

    def _render(self, coordinator: SessionCoordinator) -> None:
        for message in coordinator.messages:
            key = (message.timestamp.isoformat(), message.text)
            if key in self._printed_messages:
                continue
            self._printed_messages.add(key)
            timestamp = message.timestamp.astimezone().strftime("%H:%M:%S")
            print(f"[{timestamp}] {message.speaker_name or message.speaker_type.value}: {message.text}")

        topics = [(t.label, t.weight) for t in coordinator.topics]
        if topics != self._last_topics:
            self._last_topics = topics
            print("  Topics: " + ", ".join(f"{label} ({weight})" for label, weight in topics))

        items = [(a.text, a.completed) for a in coordinator.action_items]
        if items != self._last_items:
            self._last_items = items
            for index, (text, completed) in enumerate(items, 1):
                print(f"  [{'x' if completed else ' '}] {index}. {text}")

        if coordinator.summary and coordinator.summary != self._last_summary:
            self._last_summary = coordinator.summary
            print(f"  Summary: {coordinator.summary}")

        if coordinator.suggested_response and coordinator.suggested_response != self._last_suggestion:
            self._last_suggestion = coordinator.suggested_response
            print(f"  Suggested response: {coordinator.suggested_response}")

    @staticmethod
    def _print_notice(notice: Notice) -> None:
        marker = "!" if notice.level is NoticeLevel.ERROR else "*"
        print(f"{marker} {notice.title}: {notice.description}")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _handle_command(self, line: str) -> None:
        command, _, argument = line.strip().partition(" ")
        command = command.lower()
        if not command:
            return
        if command == "q":
            self._stop.set()
        elif command == "s":
            speaker = self.coordinator.toggle_speaker()
            print(f"* Now attributing speech to: {speaker.value}")
        elif command == "p":
            if self.engine.status is RecorderStatus.RECORDING:
                self.engine.pause()
                print("* Recording paused")
            elif self.engine.resume():
                print("* Recording resumed")
        elif command == "r":
            self._save(self.coordinator.replay_last_minute(), Path("replay.wav"))
        elif command == "ask":
            reply = await self.coordinator.ask_assistant(argument)
            if reply:
                print(f"  Assistant: {reply}")
        elif command == "todo":
            self.coordinator.add_action_item(argument)
        else:
            print(HELP_TEXT)

    def _start_reader(self) -> asyncio.Queue:
        """Read stdin lines on a daemon thread so a pending read never blocks exit."""
        loop = asyncio.get_running_loop()
        lines: asyncio.Queue = asyncio.Queue()

        def read() -> None:
            for line in sys.stdin:
                loop.call_soon_threadsafe(lines.put_nowait, line)

        threading.Thread(target=read, name="stdin-reader", daemon=True).start()
        return lines

    async def _read_commands(self) -> None:
        lines = self._start_reader()
        while not self._stop.is_set():
            await self._handle_command(await lines.get())

    @staticmethod
    def _save(audio: FinalizedAudio, path: Path) -> None:
        if audio.is_empty:
            return
        path.write_bytes(audio.data)
        print(f"* Saved {audio.duration_ms / 1000:.1f}s of audio to {path}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def setup_signal_handlers(self) -> None:
        """Stop gracefully on SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._stop.set)
            except (NotImplementedError, RuntimeError):
                # not supported on this platform; Ctrl+C raises KeyboardInterrupt instead
                logger.debug("Signal handler for %s not installed", sig)

    async def run(self, session_id: Optional[int] = None) -> int:
        """
        Record (or observe ``session_id``) until stopped.

        Returns:
            Process exit code
        """
        self.setup_signal_handlers()
        if not await self.channel.connect():
            logger.warning("Session channel unavailable; retrying in the background")

        try:
            if session_id is not None:
                await self.coordinator.open_session(session_id)
                print(f"\nObserving session {session_id}. Press Ctrl+C to stop...\n")
            else:
                if not await self.coordinator.start_recording(self.input_device):
                    return 1
                print("\nRecording started. Press Ctrl+C to stop...\n")
                print(HELP_TEXT)

            commands = asyncio.ensure_future(self._read_commands())
            await self._stop.wait()
            commands.cancel()
        finally:
            await self.shutdown()
        return 0

    async def shutdown(self) -> None:
        logger.info("Stopping...")
        result = await self.coordinator.stop_recording()
        if self.output_path is not None:
            self._save(result, self.output_path)
        await self.coordinator.drain()
        await self.coordinator.close()
        await self.channel.close()
        self.engine.close()
        if self.transcriber is not None:
            self.transcriber.backend.close()
        await self.storage.close()
        await self.analyzer.close()


def run_terminal(
    config: Dict[str, Any],
    server: Optional[str] = None,
    input_device: Optional[str] = None,
    compute_device: Optional[str] = None,
    session_id: Optional[int] = None,
    output_path: Optional[Path] = None,
) -> int:
    """Run the terminal client to completion and return its exit code."""

    async def _main() -> int:
        interface = TerminalInterface(
            config,
            server=server,
            input_device=input_device,
            compute_device=compute_device,
            output_path=output_path,
        )
        return await interface.run(session_id)

    try:
        return asyncio.run(_main())
    except KeyboardInterrupt:
        return 130
