"""
End-to-end load runs against a mocked geolocation search service.
"""

import asyncio
from urllib.parse import parse_qsl, urlsplit

import aiohttp
import pytest
from aioresponses import aioresponses
from geoload import Config, LoadTestRunner, run_scenario
from geoload.engine.aggregator import MetricsAggregator
from geoload.errors import AggregationError

from tests.helpers.mock_target import PLACES_URL, DelayedResponder


@pytest.mark.integration
class TestLoadRun:
    @pytest.mark.asyncio
    async def test_healthy_target_passes(self, scenario_config):
        responder = DelayedResponder(status=200, delay=0.01)
        with aioresponses() as m:
            m.get(PLACES_URL, callback=responder.respond, repeat=True)
            result = await asyncio.wait_for(LoadTestRunner(scenario_config).run(), timeout=10)

        snapshot = result.snapshot
        assert result.passed
        assert result.final_vus == 0
        assert result.max_vus == 4
        assert not result.interrupted
        assert snapshot.requests == len(responder.calls) > 0
        assert snapshot.checks_failed == 0
        assert snapshot.checks_passed == snapshot.requests
        assert snapshot.failure_rate == 0.0
        assert snapshot.percentile(99) < 150
        for url in responder.calls:
            query = dict(parse_qsl(urlsplit(url).query))
            assert (query["radius"], query["page"], query["limit"]) == ("30", "1", "10")
            assert -90 <= float(query["lat"]) <= 90
            assert -180 <= float(query["lon"]) <= 180

    @pytest.mark.asyncio
    async def test_server_errors_fail_checks_but_not_latency(self, scenario_config):
        with aioresponses() as m:
            m.get(PLACES_URL, callback=DelayedResponder(status=500, delay=0.01).respond, repeat=True)
            result = await asyncio.wait_for(LoadTestRunner(scenario_config).run(), timeout=10)

        snapshot = result.snapshot
        assert snapshot.requests > 0
        assert snapshot.checks_failed == snapshot.requests
        assert snapshot.checks_passed == 0
        assert snapshot.failed_requests == snapshot.requests
        assert snapshot.status_counts == {500: snapshot.requests}
        # Only a latency threshold is configured, and the responses were fast.
        assert result.passed

    @pytest.mark.asyncio
    async def test_failure_rate_threshold(self, scenario_dict):
        scenario_dict["thresholds"] = {"http_req_duration": ["p(99)<150"], "http_req_failed": ["rate<0.01"]}
        config = Config.from_dict(scenario_dict)

        with aioresponses() as m:
            m.get(PLACES_URL, exception=aiohttp.ClientConnectionError("Connection refused"), repeat=True)
            result = await asyncio.wait_for(LoadTestRunner(config).run(), timeout=10)

        snapshot = result.snapshot
        assert snapshot.error_counts == {"transport": snapshot.requests}
        assert not result.passed
        assert [r.spec.label for r in result.failed_thresholds] == ["http_req_failed: rate<0.01"]

    @pytest.mark.asyncio
    async def test_stop_interrupts_run(self, scenario_dict):
        scenario_dict["stages"] = [{"duration": 0, "target": 3}, {"duration": "30s", "target": 3}]
        runner = LoadTestRunner(Config.from_dict(scenario_dict))

        with aioresponses() as m:
            m.get(PLACES_URL, callback=DelayedResponder(delay=0.005).respond, repeat=True)
            task = asyncio.create_task(runner.run())
            await asyncio.sleep(0.2)
            runner.stop()
            result = await asyncio.wait_for(task, timeout=5)

        assert result.interrupted
        assert result.final_vus == 0
        assert result.max_vus == 3
        assert result.snapshot.requests > 0

    @pytest.mark.asyncio
    async def test_aggregation_error_aborts(self, scenario_config):
        class CorruptingAggregator(MetricsAggregator):
            def record(self, outcome):
                super().record(outcome)
                self._status_counts[outcome.status] += 1
                self.snapshot()

        runner = LoadTestRunner(scenario_config, aggregator=CorruptingAggregator())
        with aioresponses() as m:
            m.get(PLACES_URL, status=200, repeat=True)
            with pytest.raises(AggregationError):
                await asyncio.wait_for(runner.run(), timeout=10)

    @pytest.mark.asyncio
    async def test_run_scenario_helper(self, scenario_config):
        with aioresponses() as m:
            m.get(PLACES_URL, callback=DelayedResponder(delay=0.001).respond, repeat=True)
            result = await asyncio.wait_for(run_scenario(scenario_config), timeout=10)

        assert result.passed
        assert result.snapshot.requests > 0

    def test_seeded_users_draw_reproducible_coordinates(self, scenario_config):
        first = LoadTestRunner(scenario_config)._make_user(3)
        second = LoadTestRunner(scenario_config)._make_user(3)
        other = LoadTestRunner(scenario_config)._make_user(4)

        def build(user):
            return user.factory.build(user.rng).full_url

        assert build(first) == build(second)
        assert build(first) != build(other)


@pytest.mark.integration
@pytest.mark.slow
class TestPlacesSearchScenario:
    @pytest.mark.asyncio
    async def test_full_ramp_to_1500_users(self, places_scenario_file):
        config = Config.from_yaml(places_scenario_file, overrides={"seed": 2024})
        responder = DelayedResponder(status=200, delay=0.01)

        with aioresponses() as m:
            m.get(PLACES_URL, callback=responder.respond, repeat=True)
            result = await asyncio.wait_for(LoadTestRunner(config).run(), timeout=120)

        snapshot = result.snapshot
        assert result.max_vus == 1500
        assert result.final_vus == 0
        assert snapshot.checks_failed == 0
        assert snapshot.requests == len(responder.calls)
        # Roughly one request per VU-second over the hold stage alone.
        assert snapshot.requests > 1500 * 25
        assert result.passed
