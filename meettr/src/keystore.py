import json
import os
from pathlib import Path
from typing import Dict, List, Optional

from cryptography.fernet import Fernet

from .remote import mask_key

# File paths relative to the meettr tool directory
TOOL_DIR = Path(__file__).resolve().parent.parent
KEY_FILE = TOOL_DIR / "conf" / ".meettr.key"
DATA_FILE = TOOL_DIR / "conf" / ".meettr_keys.dat"


class KeyStore:
    """Fernet-encrypted storage for lists of remote API keys, per vendor."""

    def __init__(self, key_file: Optional[Path] = None, data_file: Optional[Path] = None):
        self.key_file = Path(key_file or KEY_FILE)
        self.data_file = Path(data_file or DATA_FILE)
        self._fernet = Fernet(self._load_or_create_key())

    def _load_or_create_key(self) -> bytes:
        if self.key_file.exists():
            return self.key_file.read_bytes().strip()
        self.key_file.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        self.key_file.write_bytes(key)
        os.chmod(self.key_file, 0o600)
        return key

    def _load_store(self) -> Dict[str, List[str]]:
        if not self.data_file.exists():
            return {}
        encrypted = self.data_file.read_bytes()
        decrypted = self._fernet.decrypt(encrypted)
        return json.loads(decrypted.decode("utf-8"))

    def _save_store(self, data: Dict[str, List[str]]):
        raw = json.dumps(data).encode("utf-8")
        encrypted = self._fernet.encrypt(raw)
        self.data_file.write_bytes(encrypted)

    def add_key(self, vendor: str, api_key: str) -> bool:
        """Append a key for a vendor. Returns False if it was already stored."""
        api_key = api_key.strip()
        data = self._load_store()
        keys = data.setdefault(vendor, [])
        if api_key in keys:
            return False
        keys.append(api_key)
        self._save_store(data)
        return True

    def get_keys(self, vendor: str) -> List[str]:
        return list(self._load_store().get(vendor, []))

    def masked_keys(self, vendor: str) -> List[str]:
        return [mask_key(key) for key in self.get_keys(vendor)]

    def remove_key(self, vendor: str, index: int) -> str:
        """
        Remove a vendor's key by position.

        Returns:
            The masked form of the removed key.

        Raises:
            IndexError: If there is no key at ``index``.
        """
        data = self._load_store()
        keys = data.get(vendor, [])
        if not 0 <= index < len(keys):
            raise IndexError(f"No {vendor} key at position {index + 1}")
        removed = keys.pop(index)
        if not keys:
            del data[vendor]
        if data:
            self._save_store(data)
        elif self.data_file.exists():
            # No keys left, clean up the data file
            self.data_file.unlink()
        return mask_key(removed)

    def delete_all(self):
        """Remove all stored keys and the key file."""
        if self.data_file.exists():
            self.data_file.unlink()
        if self.key_file.exists():
            self.key_file.unlink()
