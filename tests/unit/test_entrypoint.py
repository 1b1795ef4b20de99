"""The serverless entry point wraps the ASGI app without a scheduler."""

import pytest
from mangum import Mangum

from crm_tickets.config import settings
from crm_tickets.main import app

pytestmark = pytest.mark.unit


def test_handler_wraps_app():
    from api.index import handler

    assert isinstance(handler, Mangum)
    assert handler.app is app
    assert not settings.escalation_sweep_enabled
