import pytest
from pydantic import ValidationError

from attribution.models.api.attribution_request import QueryIndexRequest, ResolveOptions


def test_resolve_options_defaults():
    options = ResolveOptions()

    assert options.model == "first_touch"
    assert options.lookback_days == 14


def test_resolve_options_reject_unknown_model():
    with pytest.raises(ValidationError):
        ResolveOptions(model="linear")


def test_query_request_limits():
    assert QueryIndexRequest(signal_type="ip", signal_value="203.0.113.5").limit == 50

    with pytest.raises(ValidationError):
        QueryIndexRequest(signal_type="email", signal_value="buyer@example.com")
    with pytest.raises(ValidationError):
        QueryIndexRequest(signal_type="ip", signal_value="203.0.113.5", limit=0)


def test_validation_error_is_a_value_error():
    with pytest.raises(ValueError):
        QueryIndexRequest(signal_type="ip", signal_value="")
