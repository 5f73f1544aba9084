"""Shared pytest fixtures for mirror-selector tests."""

import sys
from pathlib import Path

# Ensure project root is on sys.path so imports work from tests/
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from directory import Endpoint, SiteRecord

FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture
def list_full_path():
    return FIXTURES / "list-full.html"


@pytest.fixture
def list_full_text(list_full_path):
    return list_full_path.read_text(encoding="utf-8")


def make_site(index, host, protocols=("https",), architectures=("amd64",), **kwargs):
    """Build a SiteRecord with one endpoint per protocol on ``host``."""
    endpoints = {p: Endpoint(p, host, "/debian/") for p in protocols}
    archs = None if architectures is None else frozenset(architectures)
    return SiteRecord(hosts=[host], index=index, architectures=archs, endpoints=endpoints, **kwargs)
