"""Tests for the cart automation API."""

import asyncio
import time
from urllib.parse import urlencode

import pytest
from httpx import ASGITransport, AsyncClient

from cart_automation.api import create_app
from cart_automation.models import RunStatus
from cart_automation.protocols.slack_commands import (
    CHECKOUT_USAGE,
    MAX_REQUEST_AGE,
    compute_signature,
    verify_slack_request,
)


@pytest.fixture
def app(settings, store, automation_factory, notifier):
    return create_app(
        settings,
        store=store,
        automation_factory=automation_factory,
        notifier=notifier,
    )


@pytest.fixture
def state(app):
    return app.state.app_state


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _ready_run(state):
    run_id = state.lifecycle.create_run([{"name": "milk"}])
    for status in (RunStatus.RUNNING, RunStatus.CART_READY):
        state.lifecycle.update_status(run_id, status)
    return run_id


class TestHealth:
    async def test_health_check(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["service"] == "cart-automation"


class TestRuns:
    async def test_create_run_processes_in_background(self, client, state):
        resp = await client.post(
            "/api/v1/runs", json={"items": [{"name": "milk"}, {"name": "bread", "quantity": 2}]}
        )
        assert resp.status_code == 202
        data = resp.json()
        assert data["status"] == "pending"
        assert data["stream_url"] == f"/api/v1/runs/{data['run_id']}/stream"

        await state.tasks[data["run_id"]]

        resp = await client.get(f"/api/v1/runs/{data['run_id']}")
        assert resp.status_code == 200
        run = resp.json()
        assert run["status"] == "cart_ready"
        assert run["success_count"] == 2
        assert run["items"][1] == {"name": "bread", "quantity": 2, "source_url": None}

    async def test_create_run_rejects_empty_list(self, client, state):
        resp = await client.post("/api/v1/runs", json={"items": []})
        assert resp.status_code == 422
        assert state.lifecycle.list_runs() == []

    async def test_create_run_rejects_bad_item(self, client):
        resp = await client.post("/api/v1/runs", json={"items": [{"quantity": 3}]})
        assert resp.status_code == 422
        assert "Item 0" in resp.json()["detail"]

    async def test_list_runs(self, client, state):
        state.lifecycle.create_run([{"name": "milk"}])
        state.lifecycle.create_run([{"name": "bread"}])

        resp = await client.get("/api/v1/runs")
        assert resp.status_code == 200
        assert resp.json()["total"] == 2

    async def test_unknown_run(self, client):
        assert (await client.get("/api/v1/runs/run_missing")).status_code == 404
        assert (await client.post("/api/v1/runs/run_missing/checkout")).status_code == 404
        assert (await client.get("/api/v1/runs/run_missing/stream")).status_code == 404


class TestCheckout:
    async def test_checkout_ready_run(self, client, state):
        run_id = _ready_run(state)

        resp = await client.post(f"/api/v1/runs/{run_id}/checkout")
        assert resp.status_code == 202
        assert resp.json()["status"] == "checkout_started"

        await state.tasks[run_id]
        assert state.lifecycle.get_run(run_id).status == RunStatus.CHECKOUT_COMPLETE

    async def test_checkout_pending_run_conflicts(self, client, state):
        run_id = state.lifecycle.create_run([{"name": "milk"}])

        resp = await client.post(f"/api/v1/runs/{run_id}/checkout")

        assert resp.status_code == 409
        assert "current state: pending" in resp.json()["detail"]
        assert state.lifecycle.get_run(run_id).status == RunStatus.PENDING

    async def test_launch_failure_rolls_back(self, client, state, monkeypatch):
        run_id = _ready_run(state)

        def refuse(run_id, coro):
            raise RuntimeError("executor unavailable")

        monkeypatch.setattr(state, "spawn", refuse)

        resp = await client.post(f"/api/v1/runs/{run_id}/checkout")

        assert resp.status_code == 500
        assert state.lifecycle.get_run(run_id).status == RunStatus.CART_READY

    async def test_second_checkout_while_first_in_progress_conflicts(
        self, client, state, automation
    ):
        run_id = _ready_run(state)
        release = asyncio.Event()
        opened = []

        async def blocking_factory():
            opened.append(run_id)
            await release.wait()
            return automation

        state.automation_factory = blocking_factory

        first = await client.post(f"/api/v1/runs/{run_id}/checkout")
        assert first.status_code == 202
        task = state.tasks[run_id]

        second = await client.post(f"/api/v1/runs/{run_id}/checkout")
        assert second.status_code == 409
        assert "in progress" in second.json()["detail"]
        assert state.tasks[run_id] is task

        release.set()
        await task
        assert len(opened) == 1
        assert state.lifecycle.get_run(run_id).status == RunStatus.CHECKOUT_COMPLETE


class TestApiKey:
    @pytest.fixture
    def settings(self, settings):
        return settings.model_copy(update={"api_key": "secret"})

    async def test_missing_key_is_rejected(self, client):
        assert (await client.get("/api/v1/runs")).status_code == 401

    async def test_valid_key_is_accepted(self, client):
        resp = await client.get("/api/v1/runs", headers={"x-api-key": "secret"})
        assert resp.status_code == 200

    async def test_health_is_open(self, client):
        assert (await client.get("/health")).status_code == 200


def _signed_form(secret, fields):
    body = urlencode(fields).encode()
    timestamp = str(int(time.time()))
    headers = {
        "content-type": "application/x-www-form-urlencoded",
        "x-slack-request-timestamp": timestamp,
        "x-slack-signature": compute_signature(secret, timestamp, body),
    }
    return body, headers


class TestSlackCheckoutCommand:
    @pytest.fixture
    def settings(self, settings):
        return settings.model_copy(update={"slack_signing_secret": "shh", "api_key": "secret"})

    async def _command(self, client, text, secret="shh"):
        body, headers = _signed_form(
            secret, {"command": "/target-checkout", "text": text, "user_name": "sam"}
        )
        return await client.post("/slack/commands/checkout", content=body, headers=headers)

    async def test_starts_checkout_for_ready_run(self, client, state):
        run_id = _ready_run(state)

        resp = await self._command(client, run_id)

        assert resp.status_code == 200
        assert resp.json() == {
            "response_type": "in_channel",
            "text": (
                f"✅ Checkout process initiated for run {run_id}. "
                "You'll receive updates when the process completes."
            ),
        }
        await state.tasks[run_id]
        assert state.lifecycle.get_run(run_id).status == RunStatus.CHECKOUT_COMPLETE

    async def test_missing_run_id_replies_with_usage(self, client, state):
        resp = await self._command(client, "   ")

        assert resp.status_code == 200
        assert resp.json() == {"response_type": "ephemeral", "text": CHECKOUT_USAGE}
        assert state.tasks == {}

    async def test_run_not_ready_is_reported(self, client, state):
        run_id = state.lifecycle.create_run([{"name": "milk"}])

        resp = await self._command(client, run_id)

        data = resp.json()
        assert data["response_type"] == "ephemeral"
        assert data["text"].startswith("❌ Failed to initiate checkout: ")
        assert "current state: pending" in data["text"]
        assert state.lifecycle.get_run(run_id).status == RunStatus.PENDING

    async def test_unknown_run_is_reported(self, client):
        resp = await self._command(client, "run_missing")

        assert resp.json() == {
            "response_type": "ephemeral",
            "text": "❌ Failed to initiate checkout: Run run_missing not found",
        }

    async def test_wrong_secret_is_rejected(self, client, state):
        run_id = _ready_run(state)

        resp = await self._command(client, run_id, secret="guess")

        assert resp.status_code == 401
        assert state.lifecycle.get_run(run_id).status == RunStatus.CART_READY

    async def test_unsigned_request_is_rejected(self, client):
        resp = await client.post(
            "/slack/commands/checkout",
            content=urlencode({"text": "run_1"}).encode(),
            headers={"content-type": "application/x-www-form-urlencoded"},
        )
        assert resp.status_code == 401


class TestVerifySlackRequest:
    def test_valid_signature(self):
        body = b"text=run_1"
        signature = compute_signature("shh", "1000", body)
        assert verify_slack_request("shh", signature, "1000", body, now=1000)

    def test_tampered_body(self):
        signature = compute_signature("shh", "1000", b"text=run_1")
        assert not verify_slack_request("shh", signature, "1000", b"text=run_2", now=1000)

    def test_stale_timestamp(self):
        body = b"text=run_1"
        signature = compute_signature("shh", "1000", body)
        assert not verify_slack_request(
            "shh", signature, "1000", body, now=1000 + MAX_REQUEST_AGE + 1
        )

    def test_unconfigured_secret_rejects(self):
        body = b"text=run_1"
        signature = compute_signature("", "1000", body)
        assert not verify_slack_request("", signature, "1000", body, now=1000)

    def test_malformed_timestamp(self):
        assert not verify_slack_request("shh", "v0=abc", "yesterday", b"", now=1000)
