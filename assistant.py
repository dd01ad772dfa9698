#!/usr/bin/env python3
"""
EVA voice assistant

Press Right Ctrl to start or end a live voice conversation.
Press Right Shift to toggle hands-free mode ("wake up" / "hey EVA").
Say "goodbye" or "sleep" to end the conversation by voice.
"""

import argparse
import asyncio
import logging
import signal
import sys
import time

from pynput import keyboard

from event_bus import EventBus, EventType
from session_config import SessionConfig, get_api_key, get_deepgram_api_key, load_config
from session_status import ConnectionStatus
from voice_session import VoiceSession

SESSION_KEY = keyboard.Key.ctrl_r  # Right Control toggles the conversation
HANDS_FREE_KEY = keyboard.Key.shift_r  # Right Shift toggles wake word listening


def format_transcription(evt) -> str:
    """One terminal line for a finalized transcription event."""
    stamp = time.strftime("%H:%M:%S", time.localtime(evt.payload.get("timestamp", evt.ts)))
    sender = "You" if evt.payload.get("sender") == "user" else "EVA"
    return f"[{stamp}] {sender}: {evt.payload.get('text', '')}"


class Assistant:
    """Keyboard front end for a VoiceSession."""

    def __init__(self, session: VoiceSession):
        self.session = session

    def on_press(self, key):
        if key == SESSION_KEY:
            if self.session.status in (ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED):
                print("Session key pressed, ending conversation", flush=True)
                self.session.stop_session()
            else:
                print("Session key pressed, starting conversation", flush=True)
                self.session.request_start()
        elif key == HANDS_FREE_KEY:
            self.session.toggle_hands_free()

    def attach(self, bus: EventBus):
        bus.on(EventType.TRANSCRIPTION, lambda evt: print(format_transcription(evt), flush=True))
        bus.on(EventType.VISUAL_STATUS,
               lambda evt: print(f"EVA: {evt.payload['visual_status']}", flush=True))
        bus.on(EventType.COMMAND,
               lambda evt: print(f"EVA: heard '{evt.payload['phrase']}', ending in "
                                 f"{evt.payload['delay']:.0f}s", flush=True))


def build_session(config: dict) -> VoiceSession | None:
    api_key = get_api_key()
    if not api_key:
        print("No Gemini API key: set GEMINI_API_KEY or write ~/.config/gemini/api_key",
              flush=True)
        return None

    recognizer = None
    deepgram_key = get_deepgram_api_key()
    if deepgram_key:
        from deepgram_stt import DeepgramRecognizer
        recognizer = DeepgramRecognizer(deepgram_key)
    elif config.get("hands_free"):
        print("No Deepgram API key: hands-free wake word unavailable", flush=True)

    bus = EventBus(log_dir=config.get("event_log_dir") or None)
    return VoiceSession(
        SessionConfig.from_dict(config),
        api_key=api_key,
        recognizer=recognizer,
        bus=bus,
        hands_free=bool(config.get("hands_free")),
    )


async def run(args) -> int:
    config = load_config(args.config)
    if args.hands_free:
        config["hands_free"] = True

    session = build_session(config)
    if session is None:
        return 1
    assistant = Assistant(session)
    assistant.attach(session.bus)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await session.start()
    listener = keyboard.Listener(on_press=assistant.on_press)
    listener.start()
    print("EVA ready: Right Ctrl to talk, Right Shift for hands-free", flush=True)

    if args.start:
        session.request_start()

    try:
        await stop.wait()
    finally:
        print("\nShutting down...", flush=True)
        listener.stop()
        await session.shutdown()
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description="EVA live voice assistant")
    parser.add_argument("--config", help="path to config.json")
    parser.add_argument("--hands-free", action="store_true",
                        help="listen for the wake word at startup")
    parser.add_argument("--start", action="store_true",
                        help="start a conversation immediately")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(name)s: %(message)s",
    )
    sys.exit(asyncio.run(run(args)))


if __name__ == '__main__':
    main()
