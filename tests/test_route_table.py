"""
Route classification and usage classification tests.
"""

import pytest

from backlify.middleware.context import RouteClass, UsageKind
from backlify.middleware.route_table import RouteTable, compile_pattern
from backlify.middleware.usage_limits import classify_usage

from conftest import GENERATED_API_ID


@pytest.fixture
def table() -> RouteTable:
    return RouteTable()


@pytest.mark.unit
class TestRouteTable:
    """METHOD:path patterns compiled once, protected wins on overlap."""

    @pytest.mark.parametrize("method,path", [
        ("GET", "/"),
        ("GET", "/health"),
        ("POST", "/auth/login"),
        ("POST", "/auth/register"),
        ("GET", "/api/payment/plans"),
        ("POST", "/api/epoint/callback"),
        ("POST", "/api/epoint-callback"),
        ("GET", "/docs/oauth2-redirect"),
    ])
    def test_public_routes(self, table, method, path):
        route_class, _ = table.classify(method, path)
        assert route_class == RouteClass.PUBLIC

    @pytest.mark.parametrize("method,path", [
        ("POST", "/auth/logout"),
        ("POST", "/api/payment/order"),
        ("GET", "/api/usage/current"),
        ("POST", "/create-api-from-schema"),
        ("DELETE", f"/api/{GENERATED_API_ID}/items/4"),
    ])
    def test_protected_routes(self, table, method, path):
        route_class, _ = table.classify(method, path)
        assert route_class == RouteClass.PROTECTED

    def test_unlisted_route_is_protected(self, table):
        assert table.classify("GET", "/somewhere/else") == (RouteClass.PROTECTED, {})

    def test_method_must_match(self, table):
        route_class, _ = table.classify("DELETE", "/auth/login")
        assert route_class == RouteClass.PROTECTED

    def test_trailing_slash_matches(self, table):
        route_class, _ = table.classify("GET", "/api/payment/plans/")
        assert route_class == RouteClass.PUBLIC

    def test_path_params_are_extracted(self, table):
        route_class, params = table.classify("GET", f"/api/{GENERATED_API_ID}")
        assert route_class == RouteClass.PROTECTED
        assert params == {"apiId": GENERATED_API_ID}

    def test_protected_beats_public_on_overlap(self):
        table = RouteTable(public=["GET:/reports/*"], protected=["GET:/reports/private"])
        assert table.classify("GET", "/reports/private")[0] == RouteClass.PROTECTED
        assert table.classify("GET", "/reports/summary")[0] == RouteClass.PUBLIC

    def test_invalid_key_rejected(self):
        with pytest.raises(ValueError):
            compile_pattern("/no-method")


@pytest.mark.unit
@pytest.mark.usage
class TestUsageClassification:
    """Projects and generated-API requests are the only metered kinds."""

    def test_project_creation(self):
        assert classify_usage("POST", "/create-api-from-schema") == (UsageKind.PROJECT, None)

    def test_project_requires_post(self):
        assert classify_usage("GET", "/create-api-from-schema") == (None, None)

    def test_generated_api_request(self):
        assert classify_usage("GET", f"/api/{GENERATED_API_ID}/users") == (UsageKind.REQUEST, GENERATED_API_ID)

    def test_system_prefixes_are_not_metered(self):
        assert classify_usage("GET", "/api/payment/history") == (None, None)
        assert classify_usage("GET", "/api/user/profile") == (None, None)

    def test_non_uuid_segment_is_not_metered(self):
        assert classify_usage("GET", "/api/usage/current") == (None, None)
