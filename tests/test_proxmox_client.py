"""
Proxmox API client: credential recovery, transport failures and task polling.
"""
import asyncio
import json
from unittest.mock import AsyncMock

import pytest
import requests

from bareprox.core.exceptions import (
    AuthenticationError,
    JobCancelled,
    RemoteOperationError,
    ServiceUnavailableError,
)
from bareprox.models import ProxmoxCluster, ProxmoxHost
from bareprox.services.proxmox.auth import ProxmoxAuthenticator
from bareprox.services.proxmox.client import ProxmoxClient


def response(status_code, body=None, reason="OK"):
    r = requests.Response()
    r.status_code = status_code
    r.reason = reason
    r._content = json.dumps(body if body is not None else {}).encode()
    return r


def make_cluster(use_api_token=False):
    return ProxmoxCluster(
        name="lab",
        username="root@pam",
        use_api_token=use_api_token,
        hosts=[
            ProxmoxHost(hostname="pve1", host_address="10.0.0.11", is_online=False),
            ProxmoxHost(hostname="pve2", host_address="10.0.0.12", is_online=True),
        ],
    )


class Scripted:
    """Stands in for the blocking HTTP call and answers from a list."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.urls = []

    def __call__(self, method, url, headers, data):
        self.urls.append((method, url))
        return self.responses.pop(0)


@pytest.fixture
def auth():
    fake = AsyncMock()
    fake.get_headers.return_value = {"Authorization": "PVEAPIToken=root@pam!bareprox=secret"}
    fake.recover_api_token.return_value = True
    fake.authenticate.return_value = True
    return fake


@pytest.fixture
def client(auth):
    return ProxmoxClient(authenticator=auth, port=8006, poll_interval=0)


async def test_relative_url_is_anchored_on_online_host(client):
    http = Scripted(response(200, {"data": [{"vmid": 101}]}))
    client._request = http

    data = await client.get_json(make_cluster(), "/api2/json/nodes/pve2/qemu")

    assert data == [{"vmid": 101}]
    assert http.urls == [("GET", "https://10.0.0.12:8006/api2/json/nodes/pve2/qemu")]


async def test_ticket_mode_reauthenticates_and_retries(client, auth):
    client._request = Scripted(response(401, reason="Unauthorized"), response(200))
    cluster = make_cluster()

    result = await client.send(cluster, "GET", "/api2/json/version")

    assert result.ok
    auth.authenticate.assert_awaited_once_with(cluster)
    auth.recover_api_token.assert_not_awaited()


async def test_token_mode_recovers_token(client, auth):
    client._request = Scripted(response(403, reason="Forbidden"), response(200))
    cluster = make_cluster(use_api_token=True)

    await client.send(cluster, "GET", "/api2/json/version")

    auth.recover_api_token.assert_awaited_once_with(cluster)
    auth.authenticate.assert_not_awaited()


async def test_token_recovery_failure_uses_ticket_for_that_request_only(client, auth):
    cluster = make_cluster(use_api_token=True)
    modes_at_login = []

    async def authenticate(c):
        modes_at_login.append(c.use_api_token)
        return True

    auth.recover_api_token.return_value = False
    auth.authenticate.side_effect = authenticate
    client._request = Scripted(response(401, reason="Unauthorized"), response(200))

    result = await client.send(cluster, "GET", "/api2/json/version")

    assert result.ok
    assert modes_at_login == [True]
    assert cluster.use_api_token
    header_modes = [call.kwargs["use_api_token"] for call in auth.get_headers.await_args_list]
    assert header_modes == [None, False]


async def test_rejected_credentials_raise(client, auth):
    auth.authenticate.return_value = False
    client._request = Scripted(response(401, reason="Unauthorized"))

    with pytest.raises(AuthenticationError):
        await client.send(make_cluster(), "GET", "/api2/json/version")


async def test_still_rejected_after_recovery_raises(client):
    client._request = Scripted(response(401, reason="Unauthorized"), response(401, reason="Unauthorized"))

    with pytest.raises(AuthenticationError):
        await client.send(make_cluster(), "GET", "/api2/json/version")


async def test_other_errors_are_not_retried(client, auth):
    client._request = Scripted(response(500, {"errors": "boom"}, reason="Internal Server Error"))

    with pytest.raises(RemoteOperationError) as exc_info:
        await client.send(make_cluster(), "POST", "/api2/json/nodes/pve2/qemu/101/status/suspend")

    assert exc_info.value.status_code == 500
    auth.authenticate.assert_not_awaited()


async def test_wait_for_task_succeeds_on_ok_exit(client):
    http = Scripted(
        response(200, {"data": {"status": "running"}}),
        response(200, {"data": {"status": "stopped", "exitstatus": "OK"}}),
    )
    client._request = http

    assert await client.wait_for_task(make_cluster(), "pve2", "10.0.0.12", "UPID:pve2:0001:qmsuspend:", timeout=5)
    assert "UPID%3Apve2%3A0001%3Aqmsuspend%3A" in http.urls[0][1]


async def test_wait_for_task_reports_failed_exit(client):
    client._request = Scripted(response(200, {"data": {"status": "stopped", "exitstatus": "command failed"}}))

    assert not await client.wait_for_task(make_cluster(), "pve2", "10.0.0.12", "UPID:x", timeout=5)


async def test_wait_for_task_gives_up_at_deadline(client):
    client._request = Scripted()

    assert not await client.wait_for_task(make_cluster(), "pve2", "10.0.0.12", "UPID:x", timeout=0)


async def test_wait_for_task_stops_when_cancelled(client):
    http = Scripted(response(200, {"data": {"status": "running"}}))
    client._request = http
    cancel = asyncio.Event()
    cancel.set()

    with pytest.raises(JobCancelled):
        await client.wait_for_task(
            make_cluster(), "pve2", "10.0.0.12", "UPID:x", timeout=60, cancel_event=cancel
        )
    assert len(http.urls) == 1


def token_cluster(cipher):
    cluster = make_cluster(use_api_token=True)
    cluster.api_token_id = "root@pam!bareprox"
    cluster.api_token_secret_enc = cipher.encrypt("s3cret")
    cluster.ticket_enc = cipher.encrypt("PVE:root@pam:ticket")
    cluster.csrf_token_enc = cipher.encrypt("csrf-1")
    return cluster


async def test_header_mode_can_be_overridden_per_request(cipher):
    authenticator = ProxmoxAuthenticator(cipher=cipher)
    cluster = token_cluster(cipher)

    assert await authenticator.get_headers(cluster) == {
        "Authorization": "PVEAPIToken=root@pam!bareprox=s3cret"
    }
    assert await authenticator.get_headers(cluster, use_api_token=False) == {
        "Cookie": "PVEAuthCookie=PVE:root@pam:ticket",
        "CSRFPreventionToken": "csrf-1",
    }
    assert cluster.use_api_token


async def test_unreachable_host_raises_and_records_status(cipher):
    def refuse(method, url, headers, data):
        raise requests.ConnectionError("connection refused")

    client = ProxmoxClient(authenticator=ProxmoxAuthenticator(cipher=cipher), port=8006, poll_interval=0)
    client._request = refuse
    cluster = token_cluster(cipher)

    with pytest.raises(ServiceUnavailableError):
        await client.send(cluster, "GET", "/api2/json/version")

    assert cluster.last_status.startswith("Error: ")
    assert "connection refused" in cluster.last_status
    assert cluster.last_checked is not None
