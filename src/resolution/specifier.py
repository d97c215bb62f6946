"""Match user-supplied package specifiers against known packages."""

from __future__ import annotations

import difflib
import logging
from typing import Iterable, List, Sequence

from errors import AmbiguousSpecifier, SpecifierNotFound
from versioning.models import PackageId, Specifier
from versioning.parser import parse_partial_version, parse_version

logger = logging.getLogger(__name__)


def _version_matches(wanted: str, package_id: PackageId) -> bool:
    version = package_id.version
    try:
        full = parse_version(wanted)
    except ValueError:
        full = None
    if full is not None:
        return full == version
    try:
        prefix = parse_partial_version(wanted)
    except ValueError:
        return False
    return (version.major, version.minor, version.patch)[: len(prefix)] == prefix


def _source_matches(wanted: str, package_id: PackageId) -> bool:
    source = package_id.source
    wanted = wanted.rstrip("/")
    return wanted in (source.ident().rstrip("/"), source.url.rstrip("/"), str(source).rstrip("/"))


def matches(spec: Specifier, package_id: PackageId) -> bool:
    """True when every part present in ``spec`` agrees with ``package_id``."""
    if package_id.name != spec.name:
        return False
    if spec.version and not _version_matches(spec.version, package_id):
        return False
    if spec.source and not _source_matches(spec.source, package_id):
        return False
    return True


def match_specifier(spec: Specifier, universe: Iterable[PackageId]) -> PackageId:
    """Return the single package in ``universe`` matching ``spec``.

    Raises:
        SpecifierNotFound: nothing matches.
        AmbiguousSpecifier: more than one package matches; the message
            lists each candidate in a form that would match it uniquely.
    """
    known: List[PackageId] = sorted(set(universe), key=PackageId.sort_key)
    found = [pid for pid in known if matches(spec, pid)]
    if len(found) == 1:
        return found[0]

    if not found:
        same_name = [pid for pid in known if pid.name == spec.name]
        if same_name:
            versions = ", ".join(f"{pid.name}@{pid.version}" for pid in same_name)
            hint = f"; locked versions are: {versions}"
        else:
            close = difflib.get_close_matches(spec.name, sorted({pid.name for pid in known}), n=1)
            hint = f"; did you mean `{close[0]}`?" if close else ""
        raise SpecifierNotFound(
            f"package ID specification `{spec}` did not match any packages{hint}",
            specifier=str(spec),
        )

    names = _disambiguations(found)
    raise AmbiguousSpecifier(
        f"there are multiple `{spec.name}` packages matching `{spec}`; specify one of:\n"
        + "\n".join(f"  {name}" for name in names),
        matches=names,
        specifier=str(spec),
    )


def _disambiguations(found: Sequence[PackageId]) -> List[str]:
    versions = [str(pid.version) for pid in found]
    if len(set(versions)) == len(versions):
        return [f"{pid.name}@{pid.version}" for pid in found]
    return [f"{pid.source.ident()}#{pid.name}@{pid.version}" for pid in found]


def match_specifiers(specs: Iterable[Specifier], universe: Iterable[PackageId]) -> List[PackageId]:
    """Match each specifier; duplicates collapse, order follows ``specs``."""
    known = list(universe)
    out: List[PackageId] = []
    for spec in specs:
        pid = match_specifier(spec, known)
        if pid not in out:
            out.append(pid)
    return out
