"""Shared model helper tests."""

from app.core.database.base import generate_ulid


def test_generate_ulid() -> None:
    first = generate_ulid()
    second = generate_ulid()

    assert isinstance(first, str)
    assert len(first) == 26
    assert first != second
