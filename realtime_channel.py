"""Gemini Live WebSocket channel for voice-to-voice conversation.

Sends the session setup once, streams microphone PCM as realtime input and
yields parsed server messages (model audio, input/output transcription
deltas, turn completion, interruption).
"""

import asyncio
import base64
import binascii
import json
from dataclasses import dataclass

import websockets

from session_errors import ChannelError

REALTIME_URL = ("wss://generativelanguage.googleapis.com/ws/"
                "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent")
SETUP_TIMEOUT = 10.0  # seconds to wait for setupComplete
OUTBOUND_QUEUE_SIZE = 100  # ~25s of 4096-sample frames at 16kHz


@dataclass
class InboundMessage:
    """One server message; any subset of fields may be set."""
    audio_chunk: bytes | None = None
    input_transcript_delta: str | None = None
    output_transcript_delta: str | None = None
    turn_complete: bool = False
    interrupted: bool = False

    def is_empty(self) -> bool:
        return (not self.audio_chunk and self.input_transcript_delta is None
                and self.output_transcript_delta is None
                and not self.turn_complete and not self.interrupted)


def build_setup_message(config) -> dict:
    """Session configuration payload sent right after the socket opens."""
    return {
        "setup": {
            "model": config.model,
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": config.voice}}
                },
            },
            "systemInstruction": {"parts": [{"text": config.directive}]},
            "inputAudioTranscription": {},
            "outputAudioTranscription": {},
        }
    }


def build_media_message(pcm: bytes, sample_rate: int) -> dict:
    return {
        "realtimeInput": {
            "mediaChunks": [{
                "mimeType": f"audio/pcm;rate={sample_rate}",
                "data": base64.b64encode(pcm).decode('ascii'),
            }]
        }
    }


def parse_server_message(data: dict) -> InboundMessage:
    """Extract the fields the session cares about from a server message."""
    content = data.get("serverContent") or {}
    msg = InboundMessage()

    audio = bytearray()
    for part in (content.get("modelTurn") or {}).get("parts") or []:
        inline = part.get("inlineData") or {}
        if inline.get("data"):
            try:
                audio.extend(base64.b64decode(inline["data"]))
            except (binascii.Error, ValueError) as e:
                print(f"Realtime channel: Dropping undecodable audio part: {e}", flush=True)
    if audio:
        msg.audio_chunk = bytes(audio)

    input_tr = content.get("inputTranscription")
    if input_tr and input_tr.get("text"):
        msg.input_transcript_delta = input_tr["text"]
    output_tr = content.get("outputTranscription")
    if output_tr and output_tr.get("text"):
        msg.output_transcript_delta = output_tr["text"]

    msg.turn_complete = bool(content.get("turnComplete"))
    msg.interrupted = bool(content.get("interrupted"))
    return msg


class RealtimeChannel:
    """Bidirectional streaming channel to the live model."""

    def __init__(self, api_key, url=REALTIME_URL):
        self.api_key = api_key
        self.url = url
        self.ws = None
        self._outbound_q = None
        self._sender_task = None
        self.chunks_sent = 0

    @property
    def is_open(self) -> bool:
        return self.ws is not None

    async def connect(self, config):
        """Open the socket, send setup, wait for setupComplete."""
        try:
            self.ws = await websockets.connect(
                f"{self.url}?key={self.api_key}",
                ping_interval=20,
                max_size=None,
                open_timeout=SETUP_TIMEOUT,
            )
            await self.ws.send(json.dumps(build_setup_message(config)))
            raw = await asyncio.wait_for(self.ws.recv(), timeout=SETUP_TIMEOUT)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            await self.close()
            raise ChannelError(f"Could not open realtime channel: {e}") from e

        try:
            first = json.loads(raw)
        except json.JSONDecodeError as e:
            await self.close()
            raise ChannelError(f"Malformed setup reply: {e}") from e
        if "setupComplete" not in first:
            await self.close()
            raise ChannelError(f"Unexpected setup reply: {str(first)[:200]}")

        self._outbound_q = asyncio.Queue(maxsize=OUTBOUND_QUEUE_SIZE)
        self._sender_task = asyncio.create_task(self._send_loop())
        print(f"Realtime channel: Connected (voice={config.voice}, model={config.model})", flush=True)

    def send_audio(self, pcm: bytes, sample_rate: int):
        """Queue one PCM frame for sending; never blocks the caller."""
        if self._outbound_q is None:
            return
        try:
            self._outbound_q.put_nowait(build_media_message(pcm, sample_rate))
        except asyncio.QueueFull:
            pass  # Drop rather than block

    async def _send_loop(self):
        try:
            while True:
                message = await self._outbound_q.get()
                await self.ws.send(json.dumps(message))
                self.chunks_sent += 1
                if self.chunks_sent % 200 == 0:
                    print(f"Realtime channel: Sent {self.chunks_sent} audio chunks", flush=True)
        except websockets.exceptions.ConnectionClosed:
            pass  # receive side reports the closure

    async def messages(self):
        """Yield InboundMessages until the server closes the channel.

        A normal close ends iteration; an abnormal one raises ChannelError.
        """
        try:
            async for raw in self.ws:
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError as e:
                    print(f"Realtime channel: Skipping malformed message: {e}", flush=True)
                    continue
                if "goAway" in data:
                    print(f"Realtime channel: Server going away: {data['goAway']}", flush=True)
                msg = parse_server_message(data)
                if not msg.is_empty():
                    yield msg
        except websockets.exceptions.ConnectionClosedOK:
            return
        except websockets.exceptions.ConnectionClosed as e:
            raise ChannelError(f"Realtime channel closed abnormally: {e}") from e

    async def close(self):
        """Close the socket and stop the sender. Safe to call repeatedly."""
        sender, self._sender_task = self._sender_task, None
        if sender is not None:
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            except Exception as e:
                print(f"Realtime channel: Sender stopped with error: {e}", flush=True)
        self._outbound_q = None
        ws, self.ws = self.ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                print(f"Realtime channel: Close error: {e}", flush=True)
            print(f"Realtime channel: Disconnected ({self.chunks_sent} chunks sent)", flush=True)
