"""Configuration: config.json with defaults, API keys, session snapshot."""

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path

CONFIG_FILE = Path(__file__).parent / "config.json"
GEMINI_KEY_FILE = Path.home() / ".config" / "gemini" / "api_key"
DEEPGRAM_KEY_FILE = Path.home() / ".config" / "deepgram" / "api_key"

# Prebuilt voices offered by the live model
VOICES = {"Zephyr", "Puck", "Charon", "Kore", "Fenrir"}
LANGUAGES = ["English", "Hindi", "Hinglish", "Spanish", "French", "German", "Japanese", "Chinese"]

DEFAULT_SYSTEM_PROMPT = (
    'You are EVA, an expert developer and empathetic AI assistant created by Sourabh. '
    'Be human, warm, and conversational in Hinglish. CRITICAL: If the user says "Goodbye" '
    'or "Sleep", acknowledge it briefly and then stop the conversation.'
)

DEFAULT_CONFIG = {
    "voice": "Zephyr",
    "language": "Hinglish",
    "system_prompt": DEFAULT_SYSTEM_PROMPT,
    "assistant_name": "EVA",
    "creator": "Sourabh",
    "model": "models/gemini-2.5-flash-native-audio-preview-12-2025",
    "hands_free": False,
    "stop_delay_seconds": 3.0,
    "recognizer_restart_delay": 1.0,
    "activity_threshold": 0.01,
    "input_sample_rate": 16000,
    "output_sample_rate": 24000,
    "frame_size": 4096,
    "exit_phrases": ["goodbye", "sleep", "stop session"],
    "event_log_dir": "",
}


def load_config(path=None):
    """Load configuration merged over the defaults."""
    config_file = Path(path) if path else CONFIG_FILE
    try:
        if config_file.exists():
            with open(config_file) as f:
                config = json.load(f)
            return {**DEFAULT_CONFIG, **config}
    except (OSError, json.JSONDecodeError) as e:
        print(f"Config: Ignoring unreadable {config_file}: {e}", flush=True)
    return dict(DEFAULT_CONFIG)


def save_config(config, path=None):
    """Save configuration."""
    config_file = Path(path) if path else CONFIG_FILE
    config_file.parent.mkdir(parents=True, exist_ok=True)
    with open(config_file, 'w') as f:
        json.dump(config, f, indent=2)


def _read_key(env_names, key_file):
    for name in env_names:
        key = os.environ.get(name)
        if key:
            return key
    if key_file.exists():
        return key_file.read_text().strip()
    return None


def get_api_key():
    """Get the Gemini API key."""
    return _read_key(("GEMINI_API_KEY", "GOOGLE_API_KEY"), GEMINI_KEY_FILE)


def get_deepgram_api_key():
    """Get the Deepgram API key (only needed for hands-free wake word)."""
    return _read_key(("DEEPGRAM_API_KEY",), DEEPGRAM_KEY_FILE)


@dataclass(frozen=True)
class SessionConfig:
    """Settings captured when a session starts; fixed for its lifetime."""
    voice: str = DEFAULT_CONFIG["voice"]
    language: str = DEFAULT_CONFIG["language"]
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    assistant_name: str = DEFAULT_CONFIG["assistant_name"]
    creator: str = DEFAULT_CONFIG["creator"]
    model: str = DEFAULT_CONFIG["model"]
    stop_delay_seconds: float = 3.0
    recognizer_restart_delay: float = 1.0
    activity_threshold: float = 0.01
    input_sample_rate: int = 16000
    output_sample_rate: int = 24000
    frame_size: int = 4096
    exit_phrases: tuple = ("goodbye", "sleep", "stop session")

    @classmethod
    def from_dict(cls, config: dict) -> "SessionConfig":
        names = {f.name for f in fields(cls)}
        values = {k: v for k, v in config.items() if k in names}
        if values.get("voice") not in VOICES:
            values["voice"] = DEFAULT_CONFIG["voice"]
        if "exit_phrases" in values:
            values["exit_phrases"] = tuple(values["exit_phrases"])
        return cls(**values)

    @property
    def directive(self) -> str:
        """Instruction text sent once at connect time."""
        return (f"{self.system_prompt} ALWAYS remember your creator is {self.creator}. "
                f"Use {self.language}.")
