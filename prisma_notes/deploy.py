"""Netlify build hook trigger and deploy status polling."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator
from urllib.parse import quote_plus, urlparse

from .config import Settings
from .errors import ConfigurationError, TransportError
from .http import request_json, send_json

logger = logging.getLogger(__name__)

NETLIFY_API_URL = "https://api.netlify.com/api/v1"
READY_STATES = {"ready"}
FAILED_STATES = {"error", "rejected"}
# Tolerated drift between this host and Netlify when matching deploys by creation time.
CLOCK_SKEW = timedelta(seconds=30)
STATE_PROGRESS = {
    "new": 10,
    "pending_review": 15,
    "accepted": 20,
    "enqueued": 25,
    "building": 50,
    "uploading": 75,
    "uploaded": 85,
    "preparing": 45,
    "prepared": 60,
    "processing": 90,
    "processed": 95,
    "ready": 100,
}


@dataclass
class DeployUpdate:
    status: str
    message: str
    progress: int = 0
    deploy_id: str | None = None
    url: str | None = None

    @property
    def is_ready(self) -> bool:
        return self.status in READY_STATES


def trigger_build(hook_url: str | None, title: str | None = None) -> None:
    if not hook_url:
        raise ConfigurationError("Missing required environment variable: NETLIFY_BUILD_HOOK")
    target = hook_url
    if title:
        separator = "&" if "?" in hook_url else "?"
        target = f"{hook_url}{separator}trigger_title={quote_plus(title)}"
    # A hook call that times out may still have queued a build, so it is sent once.
    send_json("POST", target, payload={})
    logger.info("Netlify build triggered")


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def deploy_url(deploy: dict[str, Any]) -> str | None:
    return deploy.get("ssl_url") or deploy.get("deploy_ssl_url") or deploy.get("url") or deploy.get("deploy_url")


class NetlifyDeployTracker:
    def __init__(
        self,
        site_id: str,
        api_token: str,
        interval: float = 5.0,
        timeout: float = 600.0,
        api_url: str = NETLIFY_API_URL,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.site_id = site_id
        self.api_token = api_token
        self.interval = interval
        self.timeout = timeout
        self.api_url = api_url.rstrip("/")
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> NetlifyDeployTracker | None:
        netlify = settings.netlify
        if not netlify.can_track:
            return None
        return cls(netlify.site_id, netlify.api_token, netlify.poll_interval, netlify.poll_timeout)

    def _get(self, path: str) -> Any:
        headers = {"Authorization": f"Bearer {self.api_token}"}
        return request_json("GET", f"{self.api_url}{path}", headers=headers).body

    def site(self) -> dict[str, Any]:
        return self._get(f"/sites/{self.site_id}")

    def latest_deploys(self, count: int = 1) -> list[dict[str, Any]]:
        return self._get(f"/sites/{self.site_id}/deploys?per_page={count}") or []

    def deploy(self, deploy_id: str) -> dict[str, Any]:
        return self._get(f"/deploys/{deploy_id}")

    def latest_deploy_id(self) -> str | None:
        """Id of the newest deploy, read before a build hook call to spot the deploy it starts."""

        deploys = self.latest_deploys(1)
        return deploys[0].get("id") if deploys else None

    def _find_new_deploy(self, triggered_at: datetime, previous_deploy_id: str | None = None) -> dict[str, Any] | None:
        deploys = self.latest_deploys(5)
        if previous_deploy_id is not None:
            # Listings are newest first.
            if deploys and deploys[0].get("id") != previous_deploy_id:
                return deploys[0]
            return None
        for candidate in deploys:
            created_at = _parse_timestamp(candidate.get("created_at"))
            if created_at and created_at >= triggered_at - CLOCK_SKEW:
                return candidate
        return None

    def watch(self, triggered_at: datetime, previous_deploy_id: str | None = None) -> Iterator[DeployUpdate]:
        """Yield status changes of the deploy started by a build hook until it is ready.

        With ``previous_deploy_id`` the first deploy listed above it is followed; without
        it, the first deploy created around ``triggered_at``.
        Raises ``TransportError`` when the deploy fails or does not finish in time.
        """

        deadline = self._clock() + self.timeout
        if triggered_at.tzinfo is None:
            triggered_at = triggered_at.replace(tzinfo=timezone.utc)

        deploy = None
        announced = False
        while deploy is None:
            deploy = self._find_new_deploy(triggered_at, previous_deploy_id)
            if deploy is None:
                if self._clock() >= deadline:
                    raise TransportError("Timed out waiting for Netlify to start the deploy")
                if not announced:
                    yield DeployUpdate("waiting", "Waiting for Netlify to pick up the build...", 5)
                    announced = True
                self._sleep(self.interval)

        deploy_id = deploy["id"]
        last_state = None
        while True:
            state = deploy.get("state", "unknown")
            if state in READY_STATES:
                yield DeployUpdate(state, "Deploy is live", 100, deploy_id=deploy_id, url=deploy_url(deploy))
                return
            if state in FAILED_STATES:
                reason = deploy.get("error_message") or state
                raise TransportError(f"Netlify deploy {deploy_id} failed: {reason}")
            if state != last_state:
                yield DeployUpdate(state, f"Deploy {deploy_id}: {state}", STATE_PROGRESS.get(state, 0), deploy_id=deploy_id)
                last_state = state
            if self._clock() >= deadline:
                raise TransportError(f"Timed out waiting for Netlify deploy {deploy_id} (last state: {state})")
            self._sleep(self.interval)
            deploy = self.deploy(deploy_id)

    def wait_for_deploy(
        self,
        triggered_at: datetime,
        on_update: Callable[[DeployUpdate], None] | None = None,
        previous_deploy_id: str | None = None,
    ) -> DeployUpdate:
        final = None
        for update in self.watch(triggered_at, previous_deploy_id):
            if on_update:
                on_update(update)
            final = update
        return final


def baseline_deploy_id(tracker: NetlifyDeployTracker | None) -> str | None:
    """Newest deploy id before a build hook call, or None when it cannot be read."""

    if tracker is None:
        return None
    try:
        return tracker.latest_deploy_id()
    except TransportError as exc:
        logger.warning("Could not read the latest Netlify deploy, matching by time: %s", exc)
        return None


def _check(name: str, status: str, message: str) -> dict[str, str]:
    return {"name": name, "status": status, "message": message}


def check_build_configuration(settings: Settings, tracker: NetlifyDeployTracker | None = None) -> dict[str, Any]:
    netlify = settings.netlify
    config = {
        "hasSiteId": bool(netlify.site_id),
        "hasApiToken": bool(netlify.api_token),
        "hasBuildHook": bool(netlify.build_hook),
        "canTrackBuilds": netlify.can_track,
        "canTriggerBuilds": netlify.can_trigger,
        "buildHookValid": False,
        "netlifyApiAccessible": False,
    }
    checks: list[dict[str, str]] = []

    all_present = config["hasBuildHook"] and config["hasSiteId"] and config["hasApiToken"]
    checks.append(
        _check(
            "Environment variables",
            "success" if all_present else "warning",
            "All variables are configured" if all_present else "Some variables are missing",
        )
    )

    if netlify.build_hook:
        parsed = urlparse(netlify.build_hook)
        if parsed.scheme == "https" and parsed.hostname == "api.netlify.com" and "/build_hooks/" in parsed.path:
            config["buildHookValid"] = True
            checks.append(_check("Webhook format", "success", "Build hook URL is valid"))
        else:
            checks.append(_check("Webhook format", "error", "Invalid build hook URL (expected api.netlify.com/build_hooks/...)"))
    else:
        checks.append(_check("Webhook format", "error", "NETLIFY_BUILD_HOOK is not configured"))

    tracker = tracker or NetlifyDeployTracker.from_settings(settings)
    if tracker is None:
        checks.append(_check("Netlify API access", "warning", "NETLIFY_SITE_ID or NETLIFY_API_TOKEN missing"))
    else:
        try:
            site = tracker.site()
        except TransportError as exc:
            if exc.status == 401:
                message = "API token is invalid or expired"
            elif exc.status == 404:
                message = "Site not found (check NETLIFY_SITE_ID)"
            else:
                message = f"API error: {exc}"
            checks.append(_check("Netlify API access", "error", message))
        else:
            config["netlifyApiAccessible"] = True
            checks.append(_check("Netlify API access", "success", f'Site "{site.get("name", tracker.site_id)}" is accessible'))
            try:
                deploys = tracker.latest_deploys(1)
            except TransportError:
                checks.append(_check("Deploy history", "warning", "Unable to fetch the deploy history"))
            else:
                if deploys:
                    last = deploys[0]
                    checks.append(
                        _check("Deploy history", "success", f"Last deploy: {last.get('created_at')} ({last.get('state')})")
                    )
                else:
                    checks.append(_check("Deploy history", "warning", "No deploy found"))

    can_trigger = config["canTriggerBuilds"] and config["buildHookValid"]
    can_track = config["canTrackBuilds"] and config["netlifyApiAccessible"]
    ready = can_trigger and (can_track if config["canTrackBuilds"] else True)
    return {
        "config": config,
        "checks": checks,
        "ready": ready,
        "summary": {"canTrigger": can_trigger, "canTrack": can_track, "fullFunctionality": ready},
    }
