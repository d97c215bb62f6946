"""Error kinds raised by the update pipeline.

Every error aborts the whole command. The entry point maps any
``DeplockError`` to exit status 101 and logs its message; ``kind`` and
``context`` stay available for callers that want the structured form.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class DeplockError(Exception):
    """Base class for all errors surfaced by deplock."""

    kind = "DeplockError"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def __str__(self) -> str:
        return self.message


class SpecifierNotFound(DeplockError):
    """No known package matches a user-supplied specifier."""

    kind = "SpecifierNotFound"


class AmbiguousSpecifier(DeplockError):
    """More than one known package matches a user-supplied specifier."""

    kind = "AmbiguousSpecifier"

    def __init__(self, message: str, matches: Sequence[str], **context: Any):
        super().__init__(message, matches=list(matches), **context)
        self.matches: List[str] = list(matches)


class StructuralCycle(DeplockError):
    """A dependency cycle exists through normal/build edges only."""

    kind = "StructuralCycle"

    def __init__(self, message: str, cycle: Sequence[str], **context: Any):
        super().__init__(message, cycle=list(cycle), **context)
        self.cycle: List[str] = list(cycle)


class VersionConflict(DeplockError):
    """The requirement set cannot be jointly satisfied."""

    kind = "VersionConflict"

    def __init__(self, message: str, chain: Optional[Sequence[Any]] = None, **context: Any):
        super().__init__(message, **context)
        self.chain = list(chain or [])


class OfflineNoCandidate(DeplockError):
    """Offline mode and no cached candidate matches a requirement."""

    kind = "OfflineNoCandidate"


class ExactVersionUnavailable(DeplockError):
    """The version given to ``--precise`` does not exist or is not admissible."""

    kind = "ExactVersionUnavailable"


class InvalidGitRevision(DeplockError):
    """The revision given to ``--precise`` does not exist in the repository."""

    kind = "InvalidGitRevision"


class ConflictingFlags(DeplockError):
    """Mutually exclusive update flags were combined."""

    kind = "ConflictingFlags"


class LockOutOfDate(DeplockError):
    """The lock file must change but ``--locked``/``--frozen`` forbids it."""

    kind = "LockOutOfDate"


class NetworkUnavailable(DeplockError):
    """A fetch kept failing after bounded retries, or network access is disabled."""

    kind = "NetworkUnavailable"


class PersistIoError(DeplockError):
    """The lock file could not be written."""

    kind = "PersistIoError"


class ManifestError(DeplockError):
    """A manifest is missing or malformed."""

    kind = "ManifestError"


class ConfigError(DeplockError):
    """A configuration value is malformed."""

    kind = "ConfigError"
