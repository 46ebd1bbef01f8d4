import pytest

from mustache import TemplateCache


@pytest.fixture
def cache():
    """A private template cache so tests never share parsed templates."""
    return TemplateCache()
