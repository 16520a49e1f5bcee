"""
Configuration manager for meettr.

Handles reading, writing, and editing meettr.conf settings.
"""

import configparser
import logging
import os
import platform
import shutil
import sys
import tempfile
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

# Base directory is the meettr tool directory
BASE_DIR = Path(__file__).parent.parent
CONF_DIR = BASE_DIR / "conf"
CONF_FILE = CONF_DIR / "meettr.conf"

WHISPER_MODELS = ["tiny", "base", "small", "medium", "large", "large-v2", "large-v3"]
DEVICE_CHOICES = ["auto", "cuda", "cpu"]
ENGINE_CHOICES = ["auto", "local", "remote"]
CAPTURE_MODES = ["mic", "system", "both"]

REMOTE_VENDOR = "groq"

DEFAULTS = {
    "Directories": {
        "output_dir": os.path.join("~", "meettr", "output"),
        "temp_dir": os.path.join(tempfile.gettempdir(), "meettr"),
        "logs_dir": os.path.join("~", "meettr", "logs"),
    },
    "Capture": {
        "mode": "both",
        "mic_device": "",
        "loopback_device": "",
        "input_format": "auto",
        "health_interval": "10",
        "stop_timeout": "5",
    },
    "Transcription": {
        "engine": "auto",
        "model": "medium",
        "language": "auto",
        "chunk_duration": "60",
        "whisper_command": "",
        "device": "auto",
    },
    "Remote": {
        "base_url": "https://api.groq.com/openai/v1/audio/transcriptions",
        "model": "whisper-large-v3",
        "max_concurrent": "5",
        "max_retries": "3",
        "batch_delay": "0.1",
        "timeout": "120",
    },
    "Output": {
        "markdown": "false",
        "markdown_style": "timestamped",
    },
}


def conf_path() -> Path:
    """Config file location, honouring MEETTR_CONF."""
    override = os.environ.get("MEETTR_CONF")
    return Path(override) if override else CONF_FILE


def find_ffmpeg() -> Optional[str]:
    """Locate ffmpeg via MEETTR_FFMPEG, then PATH."""
    override = os.environ.get("MEETTR_FFMPEG")
    if override:
        found = shutil.which(override)
        if found:
            return found
        if os.path.isfile(override):
            return override
        logger.warning("MEETTR_FFMPEG=%s not found, falling back to PATH", override)
    return shutil.which("ffmpeg")


def check_ffmpeg() -> str:
    """Return the ffmpeg path. If missing, print install instructions and exit."""
    found = find_ffmpeg()
    if found is not None:
        return found

    system = platform.system().lower()
    print("ERROR: ffmpeg is not installed or not found in PATH.")
    print("")
    if system == "darwin":
        print("  Install with Homebrew:")
        print("    brew install ffmpeg")
    elif system == "linux":
        distro = ""
        try:
            with open("/etc/os-release") as f:
                for line in f:
                    if line.startswith("ID="):
                        distro = line.strip().split("=")[1].strip('"')
                        break
        except FileNotFoundError:
            pass
        if distro in ("ubuntu", "debian"):
            print("  Install with apt:")
            print("    sudo apt update && sudo apt install ffmpeg")
        elif distro in ("fedora", "rhel", "centos"):
            print("  Install with dnf:")
            print("    sudo dnf install ffmpeg")
        elif distro in ("arch", "manjaro"):
            print("  Install with pacman:")
            print("    sudo pacman -S ffmpeg")
        else:
            print("  Install ffmpeg using your package manager.")
    elif system == "windows":
        print("  Download from: https://ffmpeg.org/download.html")
        print("  Or install with: winget install ffmpeg")
    else:
        print("  Download from: https://ffmpeg.org/download.html")
    print("  Or point MEETTR_FFMPEG at an ffmpeg binary.")
    print("")
    sys.exit(1)


def ensure_conf_dir_and_file(path: Optional[Path] = None) -> Path:
    """Ensure the conf directory and file exist, creating them if needed."""
    path = Path(path or conf_path())
    if not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Created configuration directory: %s", path.parent)
    if not path.exists():
        path.touch()
        logger.info("Created configuration file: %s", path)
    return path


def load_config(path: Optional[Path] = None) -> configparser.ConfigParser:
    """Load the config file."""
    path = Path(path or conf_path())
    config = configparser.ConfigParser()
    if path.exists():
        config.read(str(path), encoding="utf-8")
    return config


def save_config(config: configparser.ConfigParser, path: Optional[Path] = None):
    """Save the config file."""
    path = Path(path or conf_path())
    with open(path, "w", encoding="utf-8") as f:
        config.write(f)


def config_is_empty(config: configparser.ConfigParser) -> bool:
    """Check if the config has no meaningful content."""
    return len(config.sections()) == 0


def apply_defaults(config: configparser.ConfigParser) -> configparser.ConfigParser:
    """Fill every missing section and key with its default."""
    for section, values in DEFAULTS.items():
        if not config.has_section(section):
            config.add_section(section)
        for key, value in values.items():
            if not config.has_option(section, key):
                config.set(section, key, value)
    return config


def initialize_config(path: Optional[Path] = None) -> configparser.ConfigParser:
    """
    Startup config initialization.

    An empty config file is populated with defaults and saved. Keys missing
    from an existing file fall back to defaults without rewriting it.
    """
    path = ensure_conf_dir_and_file(path)
    config = load_config(path)

    if config_is_empty(config):
        logger.info("No configuration found, writing defaults to %s", path)
        apply_defaults(config)
        save_config(config, path)
    else:
        apply_defaults(config)

    return config


def display_config(config: configparser.ConfigParser):
    """Display the current configuration."""
    print("")
    print("=" * 55)
    print("  meettr Configuration (meettr.conf)")
    print("=" * 55)
    for section in config.sections():
        print(f"  [{section}]")
        for key in config.options(section):
            print(f"    {key:<16} {config.get(section, key, fallback='')}")
    print("=" * 55)
    print("")


def configure_settings(config: configparser.ConfigParser) -> configparser.ConfigParser:
    """
    Walk through every entry in meettr.conf and let the user change values.

    Current values are shown as defaults; pressing Enter keeps them.
    """
    print("")
    print("=" * 55)
    print("  meettr Configuration Editor")
    print("=" * 55)

    for section in config.sections():
        print(f"\n[{section}]")
        for key in config.options(section):
            current = config.get(section, key, fallback="")
            if current:
                raw = input(f"  {key} [{current}]: ").strip()
                if not raw:
                    raw = current
            else:
                raw = input(f"  {key}: ").strip()
            config.set(section, key, raw)

    print("")
    return config


def get_directory(config: configparser.ConfigParser, key: str) -> str:
    """Get a [Directories] entry as an absolute, user-expanded path."""
    value = config.get("Directories", key, fallback=DEFAULTS["Directories"][key])
    return os.path.abspath(os.path.expanduser(value))


def get_effective_device(config: configparser.ConfigParser) -> Optional[str]:
    """Get the device setting, returning None for 'auto' (let whisper decide)."""
    device = config.get("Transcription", "device", fallback="auto")
    if device == "auto":
        return None
    return device


def get_input_format(config: configparser.ConfigParser) -> Optional[str]:
    """Get the capture input format, returning None for 'auto'."""
    fmt = config.get("Capture", "input_format", fallback="auto")
    if not fmt or fmt == "auto":
        return None
    return fmt


def get_api_keys(keystore=None) -> List[str]:
    """
    Collect remote API keys: GROQ_API_KEYS first, then the key store.

    Duplicates are removed, order preserved.
    """
    keys = [k.strip() for k in os.environ.get("GROQ_API_KEYS", "").split(",") if k.strip()]
    if keystore is not None:
        keys.extend(keystore.get_keys(REMOTE_VENDOR))
    return list(dict.fromkeys(keys))


def find_ffprobe(ffmpeg: Optional[str]) -> str:
    """Find the ffprobe that ships beside ``ffmpeg``, else the one on PATH."""
    if ffmpeg:
        directory, name = os.path.split(ffmpeg)
        sibling = os.path.join(directory, name.replace("ffmpeg", "ffprobe"))
        if directory and os.path.isfile(sibling):
            return sibling
    return shutil.which("ffprobe") or "ffprobe"
