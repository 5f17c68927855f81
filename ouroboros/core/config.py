"""
Encrypted key store for provider API keys.

Keys live in ~/.ouroboros/config/ (Fernet-encrypted) and serve as the last
credential source after explicit overrides, the active provider's bound key
and the environment.
"""

import json
import logging
import os
import re
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from rich.console import Console
from rich.table import Table

logger = logging.getLogger(__name__)

# Key names the runtime knows how to use, with the provider they unlock
KNOWN_LLM_KEYS = {
    "OPENAI_API_KEY": "OpenAI",
    "ANTHROPIC_API_KEY": "Anthropic (Claude)",
    "GEMINI_API_KEY": "Google Gemini",
    "GOOGLE_API_KEY": "Google Gemini (alternate name)",
}


class ConfigManager:
    """
    Manages stored provider API keys.

    Directory structure:
        ~/.ouroboros/config/.key     # Encryption key
        ~/.ouroboros/config/keys.enc # Encrypted API keys
    """

    def __init__(self, base_dir: Path | None = None, console: Console | None = None):
        if base_dir is None:
            base_dir = Path.home() / ".ouroboros" / "config"

        self.base_dir = base_dir
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.console = console or Console()
        self._fernet = self._get_fernet()
        self._cache: dict[str, str] | None = None

    def _get_fernet(self) -> Fernet:
        """Get or create the encryption key."""
        key_file = self.base_dir / ".key"

        if key_file.exists():
            key = key_file.read_bytes()
        else:
            key = Fernet.generate_key()
            key_file.write_bytes(key)
            try:
                key_file.chmod(0o600)
            except OSError:
                pass

        return Fernet(key)

    def _keys_path(self) -> Path:
        return self.base_dir / "keys.enc"

    def _load_keys(self) -> dict[str, str]:
        """Load and decrypt stored keys."""
        if self._cache is not None:
            return self._cache

        path = self._keys_path()
        if not path.exists():
            self._cache = {}
            return self._cache

        try:
            keys = json.loads(self._fernet.decrypt(path.read_bytes()))
        except (InvalidToken, json.JSONDecodeError):
            logger.warning("Could not decrypt %s; ignoring stored keys", path)
            keys = {}
        self._cache = keys
        return keys

    def _save_keys(self, keys: dict[str, str]) -> None:
        """Encrypt and save keys."""
        path = self._keys_path()
        path.write_bytes(self._fernet.encrypt(json.dumps(keys).encode()))
        try:
            path.chmod(0o600)
        except OSError:
            pass
        self._cache = keys

    def get(self, name: str) -> str | None:
        """Get a value, checking the environment before the store."""
        if name in os.environ:
            return os.environ[name]
        return self.get_stored(name)

    def get_stored(self, name: str) -> str | None:
        """Get a value from the encrypted store only."""
        return self._load_keys().get(name)

    def set(self, name: str, value: str) -> None:
        keys = dict(self._load_keys())
        keys[name] = value
        self._save_keys(keys)

    def delete(self, name: str) -> bool:
        """Delete a stored key. Returns True if it existed."""
        keys = dict(self._load_keys())
        if name not in keys:
            return False
        del keys[name]
        self._save_keys(keys)
        return True

    def list_keys(self) -> list[str]:
        return list(self._load_keys().keys())

    def load_into_environment(self) -> int:
        """
        Export stored keys as environment variables.

        Only sets variables that aren't already in the environment.

        Returns:
            Number of keys loaded
        """
        loaded = 0
        for name, value in self._load_keys().items():
            if name not in os.environ:
                os.environ[name] = value
                loaded += 1
        return loaded

    def set_from_file(self, file_path: str | Path) -> int:
        """
        Import keys from a .env file (KEY=value lines, optional 'export ').

        Returns:
            Number of keys imported
        """
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")

        pattern = re.compile(r"^(?:export\s+)?([A-Z_][A-Z0-9_]*)=(.+)$")
        imported = 0

        with open(path) as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue

                match = pattern.match(line)
                if not match:
                    continue
                name, value = match.groups()
                if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
                    value = value[1:-1]
                self.set(name, value)
                imported += 1

        return imported

    def show_status(self) -> None:
        """Print which provider keys are available and where they come from."""
        keys = self._load_keys()

        table = Table(title="Provider API Keys")
        table.add_column("Key", style="cyan")
        table.add_column("Provider")
        table.add_column("Source")

        for name in sorted(set(KNOWN_LLM_KEYS) | set(keys)):
            provider = KNOWN_LLM_KEYS.get(name, "Custom")
            if name in os.environ:
                source = "[yellow]environment[/yellow]"
            elif name in keys:
                source = "[green]stored[/green]"
            else:
                source = "[dim]missing[/dim]"
            table.add_row(name, provider, source)

        self.console.print(table)
        self.console.print(f"[dim]Config location: {self.base_dir}[/dim]")
