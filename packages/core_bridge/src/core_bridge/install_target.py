from __future__ import annotations

import hashlib
from dataclasses import dataclass

from packaging.requirements import InvalidRequirement, Requirement

_URL_PREFIXES = ("git+", "hg+", "svn+", "bzr+", "http://", "https://", "file:")
_ARCHIVE_SUFFIXES = (".whl", ".tar.gz", ".tgz", ".zip", ".tar.bz2")
_PATH_PREFIXES = ("/", "\\", ".", "~")


@dataclass(frozen=True)
class InstallTarget:
    """What `pip install -U` is pointed at, plus the optional disambiguating id."""

    spec: str
    install_id: str | None = None

    @property
    def is_pinned(self) -> bool:
        """False only for a bare distribution name such as `rapidkit-core`."""
        text = self.spec.strip()
        lowered = text.lower()
        if lowered.startswith(_URL_PREFIXES) or lowered.endswith(_ARCHIVE_SUFFIXES):
            return True
        if text.startswith(_PATH_PREFIXES) or (len(text) > 1 and text[1] == ":"):
            return True
        try:
            requirement = Requirement(text)
        except InvalidRequirement:
            return True
        return bool(requirement.url or requirement.specifier or requirement.extras)

    @property
    def may_adopt_legacy_sandbox(self) -> bool:
        return not self.is_pinned and not self.install_id

    def cache_key(self, *, length: int = 16) -> str:
        material = self.spec.strip()
        if self.install_id:
            material = f"{material}|{self.install_id.strip()}"
        return hashlib.sha256(material.encode("utf-8")).hexdigest()[:length]

    def sandbox_dirname(self) -> str:
        return f"venv-{self.cache_key()}"
