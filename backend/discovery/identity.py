"""
Identity Service providing the DeviceInfo this node announces.
"""

import json
import logging
import platform
import random
import uuid
from pathlib import Path

from pydantic import ValidationError

from config import CONFIG_DIR
from discovery.models import DeviceInfo, DeviceType

logger = logging.getLogger(__name__)

ADJECTIVES = [
    "Neon", "Cosmic", "Turbo", "Silent", "Electric", "Quantum",
    "Hidden", "Mystic", "Clever", "Swift", "Brave", "Pixel",
    "Sneaky", "Bold", "Lucky", "Happy", "Fierce", "Calm"
]

ANIMALS = [
    "Fox", "Panda", "Gopher", "Bear", "Snail", "Owl",
    "Wolf", "Tiger", "Hawk", "Dolphin", "Penguin", "Falcon",
    "Eagle", "Lion", "Shark", "Whale", "Octopus", "Duck"
]


def generate_device_info() -> DeviceInfo:
    """A fresh identity: random alias, random fingerprint, headless type."""
    return DeviceInfo(
        alias=f"{random.choice(ADJECTIVES)} {random.choice(ANIMALS)}",
        device_model=platform.system() or None,
        device_type=DeviceType.HEADLESS,
        fingerprint=str(uuid.uuid4()),
    )


class IdentityService:
    """Loads the node's identity from disk, generating it on first run."""

    def __init__(self, config_dir: Path = CONFIG_DIR):
        self._identity_path = Path(config_dir) / "identity.json"
        self.device_info = self._load_or_generate()

        logger.info(f"Initialized IdentityService as {self.device_info}")

    def _load_or_generate(self) -> DeviceInfo:
        """Loads the existing identity or creates and stores a new one."""
        if self._identity_path.exists():
            try:
                return DeviceInfo.model_validate_json(self._identity_path.read_text())
            except (OSError, ValidationError) as e:
                logger.warning(f"Failed to load existing identity: {e}. Generating new one.")

        device_info = generate_device_info()
        self._save(device_info)
        return device_info

    def _save(self, device_info: DeviceInfo) -> None:
        try:
            self._identity_path.parent.mkdir(parents=True, exist_ok=True)
            self._identity_path.write_text(json.dumps(device_info.to_wire(), indent=2))
        except OSError as e:
            logger.error(f"Failed to save identity: {e}")

    def rename(self, alias: str) -> DeviceInfo:
        """Change the alias; the fingerprint stays the same."""
        self.device_info = self.device_info.model_copy(update={"alias": alias})
        self._save(self.device_info)
        return self.device_info
