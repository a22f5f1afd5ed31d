from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET  # nosec: B405 - reads the agent's own config file
from pathlib import Path
from typing import Optional

from .errors import ConfigArtifactError, IdentifierMissing

logger = logging.getLogger("agentfix.agent_config")

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9]+(?:-[A-Za-z0-9]+)*$")


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def read_field(path: Path, field_name: str) -> Optional[str]:
    """
    Return the value of ``field_name`` from an XML configuration artifact.

    Understands .NET appSettings entries (``<add key="F" value="V"/>``) and
    plain elements (``<F>V</F>``). Returns None if the file or field is absent;
    raises ConfigArtifactError if the file exists but can't be parsed.
    """
    if not path.is_file():
        return None
    try:
        root = ET.parse(path).getroot()
    except (ET.ParseError, OSError) as exc:
        raise ConfigArtifactError(f"Could not read {path}: {exc}") from exc

    for el in root.iter():
        if _local_name(el.tag) == "add" and el.get("key") == field_name:
            return el.get("value")
    for el in root.iter():
        if _local_name(el.tag) == field_name:
            return el.text or ""
    return None


def normalize_identifier(raw: Optional[str]) -> Optional[str]:
    """
    Trim, strip GUID braces and validate. Returns None when not identifier-shaped.
    """
    if raw is None:
        return None
    value = raw.strip().strip("{}").strip()
    if not value or not _IDENTIFIER_RE.match(value):
        return None
    return value


def recover_identifier(install_dir: Path, artifact: str, field_name: str) -> str:
    """
    Read the install-time identifier from the agent's configuration artifact.

    Raises IdentifierMissing when the artifact is absent, unreadable or the
    field is blank/malformed.
    """
    path = install_dir / artifact
    try:
        raw = read_field(path, field_name)
    except ConfigArtifactError as exc:
        raise IdentifierMissing(str(exc)) from exc
    if raw is None:
        raise IdentifierMissing(f"{field_name} not found in {path}")
    identifier = normalize_identifier(raw)
    if identifier is None:
        raise IdentifierMissing(f"{field_name} in {path} is blank or malformed: {raw!r}")
    logger.info("Recovered %s=%s from %s", field_name, identifier, path)
    return identifier
