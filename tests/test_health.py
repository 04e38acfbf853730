"""
Tests for the oracle service health client.
"""
import asyncio

import pytest
import requests
import requests_mock

from prmx_sdk.health import HealthClient

BASE_URL = "https://oracle.example.com"

HEALTHY = {
    "success": True,
    "data": {
        "overall_status": "healthy",
        "timestamp": 1700000000,
        "services": {
            "oracle_v2": {"status": "online", "last_check": 1699999990},
            "oracle_v3": {"status": "online", "last_check": 1699999990, "observations_processed": 42},
            "database": {"status": "online", "last_check": 1699999990},
            "chain": {"status": "online", "last_check": 1699999990},
        },
        "metrics": {
            "policies_monitored": 7,
            "snapshots_last_24h": 144,
            "observations_last_24h": 1008,
            "last_successful_operation": 1699999900,
        },
    },
}


def test_healthy_report():
    client = HealthClient(BASE_URL)
    with requests_mock.Mocker() as m:
        m.get(f"{BASE_URL}/admin/health", json=HEALTHY)
        status = client.get_status()

    assert status.is_online
    assert status.overall_status == "healthy"
    assert status.metrics.policies_monitored == 7
    assert status.services["oracle_v3"].status == "online"


@pytest.mark.parametrize("mock_kwargs", [
    {"status_code": 503, "json": {"success": False}},
    {"status_code": 200, "json": {"success": False, "error": "maintenance"}},
    {"status_code": 200, "text": "<html>gateway</html>"},
    {"status_code": 200, "json": {"success": True, "data": {"timestamp": "soon"}}},
    {"exc": requests.exceptions.ConnectTimeout},
])
def test_failures_degrade_to_offline(mock_kwargs):
    client = HealthClient(BASE_URL, retry_count=0)
    with requests_mock.Mocker() as m:
        m.get(f"{BASE_URL}/admin/health", **mock_kwargs)
        status = client.get_status()

    assert status.overall_status == "down"
    assert all(service.status == "offline" for service in status.services.values())


def test_async_status():
    client = HealthClient(BASE_URL)
    with requests_mock.Mocker() as m:
        m.get(f"{BASE_URL}/admin/health", json=HEALTHY)
        status = asyncio.run(client.get_status_async())
    assert status.overall_status == "healthy"


def test_http_rejected_for_remote_hosts():
    with pytest.raises(ValueError):
        HealthClient("http://oracle.example.com")


@pytest.mark.parametrize("url", ["http://localhost:3001", "http://127.0.0.1:3001/"])
def test_http_allowed_for_local_hosts(url):
    assert HealthClient(url).base_url == url.rstrip("/")
