from __future__ import annotations

import os

import pytest


@pytest.mark.basic
@pytest.mark.parametrize(
    "raw,expected",
    [
        ("128M", 128 * 1024 * 1024),
        ("1g", 1024**3),
        ("512K", 512 * 1024),
        ("1048576", 1048576),
        ("-1", -1),
        (None, -1),
        (-5, -1),
    ],
)
def test_parse_memory_limit(raw, expected) -> None:
    from warmworker.memory import parse_memory_limit

    assert parse_memory_limit(raw) == expected


@pytest.mark.basic
def test_parse_memory_limit_rejects_garbage() -> None:
    from warmworker.memory import parse_memory_limit

    with pytest.raises(ValueError):
        parse_memory_limit("lots")


@pytest.mark.basic
def test_format_bytes() -> None:
    from warmworker.memory import format_bytes

    assert format_bytes(0) == "0 B"
    assert format_bytes(1536) == "1.5 KB"
    assert format_bytes(3 * 1024 * 1024) == "3 MB"
    assert format_bytes(-1536) == "-1.5 KB"
    assert format_bytes(-3 * 1024 * 1024) == "-3 MB"


@pytest.mark.basic
def test_configured_ceiling_wins_and_usage_report_shape() -> None:
    from warmworker.memory import UNLIMITED, memory_usage, process_memory_ceiling

    assert process_memory_ceiling("64M") == 64 * 1024 * 1024
    assert process_memory_ceiling("-1") == UNLIMITED

    usage = memory_usage(configured_limit="-1", pid=os.getpid())
    assert usage["memory_usage"] > 0
    assert usage["memory_peak_usage"] >= usage["memory_usage"]
    assert usage["memory_limit"] == "-1"
    assert usage["memory_limit_bytes"] == UNLIMITED
    assert usage["memory_usage_formatted"].split(" ")[1] in {"B", "KB", "MB", "GB", "TB"}
