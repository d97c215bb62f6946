"""Token parsing utilities for specifiers, sources and requirements."""

from typing import Any, Mapping, Optional, Tuple

import semantic_version

from .models import DepKind, Requirement, SourceId, SourceKind, Specifier, VersionRange

_GIT_REF_KEYS = ("branch", "tag", "rev")


def tokenize_rightmost_colon(s: str) -> Tuple[str, Optional[str]]:
    """Return (identifier, spec or None) using the rightmost-colon rule.

    Does not assume ecosystem-specific syntax.
    """
    s = s.strip()
    if ':' not in s:
        return s, None
    parts = s.rsplit(':', 1)
    identifier = parts[0].strip()
    spec_part = parts[1].strip() if len(parts) > 1 else ''
    spec = spec_part if spec_part else None
    return identifier, spec


def parse_specifier(token: str) -> Specifier:
    """Parse a CLI package specifier.

    Accepted forms: ``name``, ``name@version``, ``name:version`` and
    ``<source-url>#name[@version]``. A source URL without a ``#name`` part is
    taken to name the package after the last path segment.
    """
    token = token.strip()
    if not token:
        raise ValueError("empty package specifier")

    source: Optional[str] = None
    rest = token
    if "://" in token or token.startswith(("registry+", "git+", "path+")):
        if "#" in token:
            source, rest = token.rsplit("#", 1)
        else:
            source = token
            rest = token.rstrip("/").rsplit("/", 1)[-1]
            if rest.endswith(".git"):
                rest = rest[:-4]

    if "@" in rest:
        name, version = rest.split("@", 1)
    else:
        name, version = tokenize_rightmost_colon(rest)
    name = name.strip()
    version = version.strip() if version else None
    if not name:
        raise ValueError(f"invalid package specifier '{token}'")
    return Specifier(name=name, version=version or None, source=source)


def parse_source_id(text: str) -> SourceId:
    """Parse the canonical string form written to lock files.

    ``registry+<url>``, ``git+<url>[?kind=ref][#commit]`` and
    ``path+<relative-dir>``.
    """
    kind_text, sep, rest = text.partition("+")
    if not sep:
        raise ValueError(f"invalid source id '{text}'")
    kind = SourceKind(kind_text)
    if kind == SourceKind.REGISTRY:
        return SourceId.registry(rest)
    if kind == SourceKind.PATH:
        return SourceId.path(rest)
    rest, _, precise = rest.partition("#")
    url, _, reference = rest.partition("?")
    return SourceId.git(url, reference or None, precise or None)


def parse_version(text: str) -> semantic_version.Version:
    """Parse a full semantic version, stripping a leading ``v``."""
    text = text.strip()
    if text[:1] in ("v", "V"):
        text = text[1:]
    return semantic_version.Version(text)


def parse_partial_version(text: str) -> Tuple[int, ...]:
    """Parse ``1``, ``1.2`` or ``1.2.3`` into a prefix tuple for matching."""
    text = text.strip().lstrip("vV")
    return tuple(int(part) for part in text.split("-", 1)[0].split("."))


def parse_requirement(
    name: str,
    entry: Any,
    kind: DepKind,
    default_registry: SourceId,
    resolve_path=None,
) -> Requirement:
    """Construct a Requirement from a manifest dependency entry.

    Args:
        name: Dependency name as written in the manifest table.
        entry: Either a range string or a table with ``version``, ``path``,
            ``git`` (+ ``branch``/``tag``/``rev``) or ``registry`` keys.
        kind: Edge kind taken from the table the entry was declared in.
        default_registry: Registry used when the entry names none.
        resolve_path: Callable turning a manifest-relative path into a
            workspace-relative one; required for path entries.

    Returns:
        Requirement
    """
    if isinstance(entry, str):
        return Requirement(name, VersionRange(entry), default_registry, kind)
    if not isinstance(entry, Mapping):
        raise ValueError(f"dependency '{name}' must be a string or a table")

    raw_range = str(entry.get("version", "*"))
    if "path" in entry:
        if resolve_path is None:
            raise ValueError(f"path dependency '{name}' is not allowed here")
        source = SourceId.path(resolve_path(str(entry["path"])))
    elif "git" in entry:
        refs = [f"{key}={entry[key]}" for key in _GIT_REF_KEYS if key in entry]
        if len(refs) > 1:
            raise ValueError(f"dependency '{name}' names more than one of branch/tag/rev")
        source = SourceId.git(str(entry["git"]), refs[0] if refs else None)
    elif "registry" in entry:
        source = SourceId.registry(str(entry["registry"]))
    else:
        source = default_registry
    return Requirement(name, VersionRange(raw_range), source, kind)
