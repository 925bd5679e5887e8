import pytest

from harness import Harness
from scans import page_image


@pytest.fixture
def harness():
    return Harness()


@pytest.fixture
def good_scan():
    return page_image()
