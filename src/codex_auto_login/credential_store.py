from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from .config import expand_user_path


logger = logging.getLogger(__name__)

# Keys an existing Codex config may already use for its token, in preference order.
KNOWN_TOKEN_KEYS = ("token", "access_token", "accessToken", "cliToken")


class CredentialStore:
    """
    The Codex CLI config file holding the token.

    Writes are atomic (temp file in the same directory, fsync, rename) and the file is owner read/write only.
    Other keys already present in the file are preserved.
    """

    def __init__(self, path: Union[str, Path], *, token_key: str = "token") -> None:
        self.path = expand_user_path(str(path))
        self.token_key = token_key or "token"

    def _read_raw(self) -> Optional[dict]:
        if not self.path.is_file():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("Could not parse %s; treating it as empty.", self.path)
            return None
        return data if isinstance(data, dict) else None

    def detect_token_key(self, data: Optional[dict]) -> str:
        if data:
            for key in KNOWN_TOKEN_KEYS:
                if isinstance(data.get(key), str):
                    return key
        return self.token_key

    def read(self) -> Optional[dict]:
        data = self._read_raw()
        if data is None:
            return None
        token = data.get(self.detect_token_key(data))
        if not token:
            return None
        return {"token": token}

    def write(self, token: str) -> Path:
        data = self._read_raw() or {}
        data[self.detect_token_key(data)] = token
        data["updatedAt"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        text = json.dumps(data, indent=2) + "\n"

        parent = self.path.parent
        if not parent.exists():
            parent.mkdir(mode=0o700, parents=True, exist_ok=True)

        fd = None
        tmp_path: Optional[str] = None
        try:
            fd = tempfile.NamedTemporaryFile(
                mode="w",
                dir=parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
                encoding="utf-8",
            )
            tmp_path = fd.name
            # Restrict before any secret hits the disk.
            os.chmod(tmp_path, 0o600)
            fd.write(text)
            fd.flush()
            os.fsync(fd.fileno())
            fd.close()
            fd = None
            os.replace(tmp_path, self.path)
        except BaseException:
            if fd is not None:
                fd.close()
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            raise

        os.chmod(self.path, 0o600)
        return self.path
