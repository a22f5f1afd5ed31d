from __future__ import annotations

import pytest

from agentfix.agent_config import normalize_identifier, read_field, recover_identifier
from agentfix.errors import IdentifierMissing


def _write(path, body: str) -> None:
    path.write_text(body, encoding="utf-8")


def test_read_field_app_settings(tmp_path) -> None:
    path = tmp_path / "CagService.exe.config"
    _write(
        path,
        '<?xml version="1.0" encoding="utf-8"?>'
        "<configuration><appSettings>"
        '<add key="Platform" value="merlot" />'
        '<add key="SiteUID" value="{3F2504E0-4F89-11D3-9A0C-0305E82C3301}" />'
        "</appSettings></configuration>",
    )

    assert read_field(path, "SiteUID") == "{3F2504E0-4F89-11D3-9A0C-0305E82C3301}"
    assert read_field(path, "Missing") is None


def test_read_field_plain_element(tmp_path) -> None:
    path = tmp_path / "agent.config"
    _write(path, "<settings><SiteUID>abc-123</SiteUID></settings>")
    assert read_field(path, "SiteUID") == "abc-123"


def test_read_field_absent_file(tmp_path) -> None:
    assert read_field(tmp_path / "nope.config", "SiteUID") is None


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("  {3F2504E0-4F89-11D3-9A0C-0305E82C3301} ", "3F2504E0-4F89-11D3-9A0C-0305E82C3301"),
        ("abc123", "abc123"),
        ("", None),
        ("   ", None),
        ("abc/../def", None),
        ("abc def", None),
        ("-leading", None),
        (None, None),
    ],
)
def test_normalize_identifier(raw, expected) -> None:
    assert normalize_identifier(raw) == expected


def test_recover_identifier_raises_when_unparseable(tmp_path) -> None:
    _write(tmp_path / "CagService.exe.config", "<configuration><appSettings>")
    with pytest.raises(IdentifierMissing):
        recover_identifier(tmp_path, "CagService.exe.config", "SiteUID")


def test_recover_identifier_raises_when_blank(tmp_path) -> None:
    _write(
        tmp_path / "CagService.exe.config",
        '<configuration><appSettings><add key="SiteUID" value="" /></appSettings></configuration>',
    )
    with pytest.raises(IdentifierMissing, match="blank or malformed"):
        recover_identifier(tmp_path, "CagService.exe.config", "SiteUID")


def test_recover_identifier(tmp_path) -> None:
    _write(
        tmp_path / "CagService.exe.config",
        '<configuration><appSettings><add key="SiteUID" value="site-42" /></appSettings></configuration>',
    )
    assert recover_identifier(tmp_path, "CagService.exe.config", "SiteUID") == "site-42"
