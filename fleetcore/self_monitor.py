"""Watching for the policy this server itself is attached to."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Mapping, Union

from fleetcore.monitor import (
    IndexMonitor,
    IndexNotFoundError,
    PolicyFetcher,
    _policy_from_hit,
    group_by_latest,
)
from fleetcore.parsed_policy import Policy
from fleetcore.status import Reporter, Status

log = logging.getLogger(__name__)

DEFAULT_CHECK_TIME = 5.0
FLEET_SERVER_INPUT = "fleet-server"
_MISSING_AGENT_ID = "; missing config fleet.agent.id (expected during bootstrap process)"


@dataclass(frozen=True)
class EnrollmentApiKey:
    """An enrollment key that lets an agent enroll into a policy."""

    api_key: str = ""
    active: bool = False
    policy_id: str = ""
    api_key_id: str = ""
    name: str = ""


EnrollmentTokenFetcher = Callable[
    [str],
    Union[Iterable[EnrollmentApiKey], Awaitable[Iterable[EnrollmentApiKey]]],
]


def has_input_type(data: Mapping[str, Any] | bytes | str, input_type: str) -> bool:
    """True when the policy body has an input of ``input_type``."""
    if isinstance(data, (bytes, bytearray, str)):
        data = json.loads(data)
    if data is None:
        return False
    if not isinstance(data, Mapping):
        raise ValueError("policy data is not a JSON object")
    inputs = data.get("inputs")
    if inputs is None:
        return False
    if not isinstance(inputs, list):
        raise ValueError("policy inputs are not a list")
    return any(
        isinstance(item, Mapping) and item.get("type") == input_type for item in inputs
    )


def filter_active_tokens(tokens: Iterable[EnrollmentApiKey]) -> list[EnrollmentApiKey]:
    """Keep only the active enrollment keys, in order."""
    return [token for token in tokens if token.active]


async def _resolve(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class SelfMonitor:
    """Waits until this server's policy exists and carries a Fleet Server input.

    An empty ``policy_id`` means the default Fleet Server policy. An empty
    ``agent_id`` means the agent is not enrolled yet; an active enrollment key
    is then handed out through the reporter's payload.
    """

    def __init__(
        self,
        agent_id: str,
        index_monitor: IndexMonitor,
        policy_id: str,
        reporter: Reporter,
        policy_fetcher: PolicyFetcher,
        enrollment_token_fetcher: EnrollmentTokenFetcher,
        check_time: float = DEFAULT_CHECK_TIME,
    ) -> None:
        self._agent_id = agent_id
        self._index_monitor = index_monitor
        self._policy_id = policy_id
        self._reporter = reporter
        self._policy_fetcher = policy_fetcher
        self._enrollment_token_fetcher = enrollment_token_fetcher
        self._check_time = check_time
        self._lock = threading.Lock()
        self._status = Status.STARTING
        self._policy: Policy | None = None

    def status(self) -> Status:
        """Return the current status."""
        with self._lock:
            return self._status

    async def run(self) -> None:
        """Check periodically and on index updates until the status is healthy."""
        hit_sub = self._index_monitor.subscribe()
        timer: asyncio.Future | None = None
        hits: asyncio.Future | None = None
        try:
            await self._process()
            timer = asyncio.ensure_future(asyncio.sleep(self._check_time))
            hits = asyncio.ensure_future(hit_sub.output.get())
            while True:
                done, _ = await asyncio.wait(
                    {timer, hits}, return_when=asyncio.FIRST_COMPLETED
                )
                if timer in done:
                    status = await self._process()
                    timer = asyncio.ensure_future(asyncio.sleep(self._check_time))
                    if status == Status.HEALTHY:
                        return
                if hits in done:
                    batch = hits.result()
                    hits = asyncio.ensure_future(hit_sub.output.get())
                    policies = [_policy_from_hit(hit) for hit in batch]
                    status = await self._process_policies(policies)
                    if status == Status.HEALTHY:
                        return
        finally:
            for pending in (timer, hits):
                if pending is not None:
                    pending.cancel()
            self._index_monitor.unsubscribe(hit_sub)

    async def _process(self) -> Status:
        policies: list[Policy] = []
        try:
            policies = list(await _resolve(self._policy_fetcher()))
        except IndexNotFoundError as err:
            log.debug("policy index not found: %s", err)
        except Exception as err:  # noqa: BLE001 - a failed lookup is retried later
            log.debug("failed to fetch policies: %s", err)
            return Status.FAILED
        if not policies:
            return await self._update_status()
        return await self._process_policies(policies)

    async def _process_policies(self, policies: list[Policy]) -> Status:
        if not policies:
            return Status.STARTING
        for policy in group_by_latest(policies).values():
            if self._policy_id and policy.policy_id == self._policy_id:
                self._policy = policy
                break
            if not self._policy_id and policy.default_fleet_server:
                self._policy = policy
                break
        return await self._update_status()

    def _report(self, status: Status, message: str, payload: Mapping[str, Any] | None) -> None:
        self._reporter.status(status, message, payload)

    async def _update_status(self) -> Status:
        policy = self._policy
        if policy is None:
            with self._lock:
                self._status = Status.STARTING
            if not self._policy_id:
                self._report(
                    Status.STARTING,
                    "Waiting on default policy with Fleet Server integration",
                    None,
                )
            else:
                self._report(
                    Status.STARTING,
                    f"Waiting on policy with Fleet Server integration: {self._policy_id}",
                    None,
                )
            return Status.STARTING

        if not has_input_type(policy.data, FLEET_SERVER_INPUT):
            raise ValueError("assigned policy does not have fleet-server input")

        status = Status.HEALTHY
        extend = ""
        payload: dict[str, Any] | None = None
        if not self._agent_id:
            status = Status.DEGRADED
            extend = _MISSING_AGENT_ID
            tokens = filter_active_tokens(
                await _resolve(self._enrollment_token_fetcher(policy.policy_id))
            )
            if not tokens:
                if not self._policy_id:
                    self._report(
                        Status.STARTING,
                        "Waiting on active enrollment keys to be created in default "
                        "policy with Fleet Server integration",
                        None,
                    )
                else:
                    self._report(
                        Status.STARTING,
                        "Waiting on active enrollment keys to be created in policy "
                        f"with Fleet Server integration: {self._policy_id}",
                        None,
                    )
                return Status.STARTING
            payload = {"enrollment_token": tokens[0].api_key}

        with self._lock:
            self._status = status
        if not self._policy_id:
            self._report(
                status,
                f"Running on default policy with Fleet Server integration{extend}",
                payload,
            )
        else:
            self._report(
                status,
                f"Running on policy with Fleet Server integration: {self._policy_id}{extend}",
                payload,
            )
        return status