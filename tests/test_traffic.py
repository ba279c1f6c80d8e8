"""
Traffic factor resolution tests

Covers the report-density fallback, the external provider mapping, default
behaviour on provider failures, and the TrafficCache refresh job.

Run with: pytest tests/test_traffic.py
"""

from datetime import timedelta

import pytest
import requests
from sqlalchemy.exc import OperationalError

from src.config import EngineConfig
from src.models import Route, TrafficCache
from src.traffic import (
    HereTrafficProvider,
    TrafficResolver,
    get_cached_factor,
    get_traffic_summary,
)


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.requests = []

    def get(self, url, params=None, timeout=None):
        self.requests.append({"url": url, "params": params, "timeout": timeout})
        return self.response


class TestReportFallback:
    def test_no_reports_is_neutral(self, db_session, sample_route, config, clock):
        factor = TrafficResolver(db_session, config=config, clock=clock).resolve(sample_route)

        assert factor.traffic_factor == 1.0
        assert factor.congestion_index == 0
        assert factor.provider == "reports"

    def test_twenty_reports_saturate(self, db_session, sample_route, make_report, config, clock):
        for i in range(20):
            make_report("R42", report_type="crowding" if i % 2 else "delay")

        factor = TrafficResolver(db_session, config=config, clock=clock).resolve(sample_route)

        assert factor.traffic_factor == 1.5
        assert factor.congestion_index == 100

    def test_partial_congestion(self, db_session, sample_route, make_report, config, clock):
        for _ in range(4):
            make_report("R42", report_type="crowding")

        factor = TrafficResolver(db_session, config=config, clock=clock).resolve(sample_route)

        assert factor.traffic_factor == pytest.approx(1.2)
        assert factor.congestion_index == 40

    def test_old_and_unrelated_reports_ignored(
        self, db_session, sample_route, make_report, config, clock
    ):
        make_report("R42", report_type="crowding", created_at=clock() - timedelta(hours=3))
        make_report("R42", report_type="safety")
        make_report("R42", report_type="breakdown")

        factor = TrafficResolver(db_session, config=config, clock=clock).resolve(sample_route)
        assert factor.traffic_factor == 1.0


class TestProvider:
    def test_jam_factors_map_to_factor_and_index(
        self, db_session, sample_route, config, clock, make_provider
    ):
        provider = make_provider(jam_factors=[4.0, 6.0])
        resolver = TrafficResolver(db_session, config=config, provider=provider, clock=clock)

        factor = resolver.resolve(sample_route)

        assert factor.traffic_factor == pytest.approx(1.25)
        assert factor.congestion_index == 50
        assert factor.provider == "here"

    def test_bbox_padded_around_route(self, db_session, sample_route, config, clock, make_provider):
        provider = make_provider(jam_factors=[1.0])
        TrafficResolver(db_session, config=config, provider=provider, clock=clock).resolve(
            sample_route
        )

        west, south, east, north = provider.calls[0]
        assert west == pytest.approx(36.8219 - 0.005)
        assert south == pytest.approx(-1.2921 - 0.005)
        assert east == pytest.approx(36.8830 + 0.005)
        assert north == pytest.approx(-1.2190 + 0.005)

    def test_full_jam(self, db_session, sample_route, config, clock, make_provider):
        provider = make_provider(jam_factors=[10.0, 10.0])
        factor = TrafficResolver(db_session, config=config, provider=provider).resolve(sample_route)

        assert factor.traffic_factor == 1.5
        assert factor.congestion_index == 100

    def test_empty_result_defaults_with_provider_name(
        self, db_session, sample_route, config, make_provider
    ):
        provider = make_provider(jam_factors=[])
        resolver = TrafficResolver(db_session, config=config, provider=provider)

        result = resolver.resolve_result(sample_route)
        assert not result.resolved
        assert result.error.kind == "provider_empty"

        factor = resolver.resolve(sample_route)
        assert (factor.traffic_factor, factor.congestion_index, factor.provider) == (1.0, 0, "here")

    def test_request_failure_defaults(self, db_session, sample_route, config, make_provider):
        provider = make_provider(error=requests.Timeout("timed out"))
        resolver = TrafficResolver(db_session, config=config, provider=provider)

        assert resolver.resolve_result(sample_route).error.kind == "provider_failed"
        factor = resolver.resolve(sample_route)
        assert factor.traffic_factor == 1.0
        assert factor.congestion_index == 0

    def test_unexpected_error_defaults_to_none_provider(
        self, db_session, sample_route, config, make_provider
    ):
        provider = make_provider(error=RuntimeError("boom"))
        resolver = TrafficResolver(db_session, config=config, provider=provider)

        result = resolver.resolve_result(sample_route)
        assert result.error.kind == "unexpected"

        factor = resolver.resolve(sample_route)
        assert (factor.traffic_factor, factor.congestion_index, factor.provider) == (1.0, 0, "none")

    def test_malformed_body_counts_as_provider_failure(self, db_session, sample_route, config):
        session = FakeSession(FakeResponse([1, 2]))
        provider = HereTrafficProvider("secret", "https://example.test/flow", session=session)
        resolver = TrafficResolver(db_session, config=config, provider=provider)

        assert resolver.resolve_result(sample_route).error.kind == "provider_failed"
        factor = resolver.resolve(sample_route)
        assert (factor.traffic_factor, factor.provider) == (1.0, "here")

    def test_route_without_geometry(self, db_session, config, make_provider):
        route = Route(route_id="EMPTY", name="No geometry", fare=50, path=[])
        provider = make_provider(jam_factors=[5.0])
        resolver = TrafficResolver(db_session, config=config, provider=provider)

        assert resolver.resolve_result(route).error.kind == "no_geometry"
        assert resolver.resolve(route).traffic_factor == 1.0
        assert provider.calls == []

    def test_resolver_builds_here_provider_from_config(self, db_session):
        config = EngineConfig(traffic_api_key="secret", traffic_timeout_seconds=3)
        resolver = TrafficResolver(db_session, config=config)

        assert isinstance(resolver.provider, HereTrafficProvider)
        assert resolver.provider.timeout == 3

    def test_no_key_means_no_provider(self, db_session, config):
        assert TrafficResolver(db_session, config=config).provider is None


class TestHereTrafficProvider:
    def test_request_and_parsing(self):
        payload = {
            "results": [
                {"currentFlow": {"jamFactor": 2.5}},
                {"currentFlow": {"jamFactor": 7}},
                {"currentFlow": {}},
                {"location": {}},
            ]
        }
        session = FakeSession(FakeResponse(payload))
        provider = HereTrafficProvider("secret", "https://example.test/flow", 5, session=session)

        jam_factors = provider.fetch_jam_factors((36.8, -1.3, 36.9, -1.2))

        assert jam_factors == [2.5, 7.0]
        request = session.requests[0]
        assert request["url"] == "https://example.test/flow"
        assert request["params"]["in"] == "bbox:36.800000,-1.300000,36.900000,-1.200000"
        assert request["params"]["apiKey"] == "secret"
        assert request["timeout"] == 5

    def test_http_error_raises(self):
        session = FakeSession(FakeResponse({}, status_code=503))
        provider = HereTrafficProvider("secret", "https://example.test/flow", session=session)

        with pytest.raises(requests.HTTPError):
            provider.fetch_jam_factors((0, 0, 1, 1))


class TestTrafficCache:
    def test_refresh_all_writes_cache(
        self, db_session, sample_routes, config, clock, make_provider
    ):
        provider = make_provider(jam_factors=[8.0])
        resolver = TrafficResolver(db_session, config=config, provider=provider, clock=clock)

        assert resolver.refresh_all() == 3

        cache = db_session.get(TrafficCache, "R1")
        assert cache.traffic_factor == pytest.approx(1.4)
        assert cache.congestion_index == 80
        assert cache.provider == "here"
        assert cache.updated_at == clock()

    def test_refresh_all_upserts(self, db_session, sample_route, config, clock, make_provider):
        TrafficResolver(
            db_session, config=config, provider=make_provider([2.0]), clock=clock
        ).refresh_all()
        TrafficResolver(
            db_session, config=config, provider=make_provider([6.0]), clock=clock
        ).refresh_all()

        assert db_session.query(TrafficCache).count() == 1
        assert get_cached_factor(db_session, "R42") == pytest.approx(1.3)

    def test_refresh_skips_inactive_routes(self, db_session, sample_routes, config, clock):
        sample_routes[0].is_active = False
        db_session.commit()

        updated = TrafficResolver(db_session, config=config, clock=clock).refresh_all()

        assert updated == 2
        assert db_session.get(TrafficCache, "R1") is None

    def test_store_failure_rolls_back_and_defaults(
        self, db_session, sample_routes, config, clock, monkeypatch
    ):
        resolver = TrafficResolver(db_session, config=config, clock=clock)
        rollbacks = []
        monkeypatch.setattr(db_session, "rollback", lambda: rollbacks.append(True))

        from_reports = resolver._resolve_from_reports

        def failing_for_r1(route):
            if route.route_id == "R1":
                raise OperationalError("SELECT", {}, Exception("db down"))
            return from_reports(route)

        monkeypatch.setattr(resolver, "_resolve_from_reports", failing_for_r1)

        assert resolver.resolve_result(sample_routes[0]).error.kind == "store_failed"
        assert resolver.refresh_all() == 3
        assert rollbacks

        r1 = db_session.get(TrafficCache, "R1")
        assert (r1.traffic_factor, r1.provider) == (1.0, "none")
        assert db_session.get(TrafficCache, "R2").provider == "reports"

    def test_cache_miss_is_neutral(self, db_session):
        assert get_cached_factor(db_session, "UNKNOWN") == 1.0

    def test_summary_sorted_by_congestion(self, db_session):
        db_session.add_all(
            [
                TrafficCache(route_id="A", traffic_factor=1.1, congestion_index=20, provider="here"),
                TrafficCache(route_id="B", traffic_factor=1.4, congestion_index=80, provider="here"),
            ]
        )
        db_session.commit()

        summary = get_traffic_summary(db_session)
        assert [row["route_id"] for row in summary] == ["B", "A"]
        assert summary[0]["congestion_index"] == 80
