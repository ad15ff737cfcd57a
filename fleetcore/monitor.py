"""Delivery of policy revisions to subscribed agents."""

from __future__ import annotations

import asyncio
import inspect
import itertools
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol, Union

from fleetcore.parsed_policy import ParsedPolicy, Policy

log = logging.getLogger(__name__)

_counter = itertools.count(1)
_counter_lock = threading.Lock()


def _next_index() -> int:
    with _counter_lock:
        return next(_counter)


class IndexNotFoundError(LookupError):
    """The index holding the policies does not exist yet."""


class _HitSubscription(Protocol):
    output: asyncio.Queue


class IndexMonitor(Protocol):
    """Source of batches of index hits; each batch arrives on ``output``."""

    def subscribe(self) -> _HitSubscription: ...

    def unsubscribe(self, subscription: _HitSubscription) -> None: ...


PolicyFetcher = Callable[[], Union[Iterable[Policy], Awaitable[Iterable[Policy]]]]


@dataclass(eq=False)
class Subscription:
    """One agent's one-shot wait for a newer revision of a policy."""

    policy_id: str
    revision_idx: int
    coordinator_idx: int
    idx: int = 0
    output: asyncio.Queue = field(
        default_factory=lambda: asyncio.Queue(maxsize=1), repr=False
    )


@dataclass
class _PolicyEntry:
    parsed: ParsedPolicy | None = None
    subs: dict[int, Subscription] = field(default_factory=dict)


def _is_newer(revision_idx: int, coordinator_idx: int, than_rev: int, than_coord: int) -> bool:
    return revision_idx > than_rev or (
        revision_idx == than_rev and coordinator_idx > than_coord
    )


def group_by_latest(policies: Iterable[Policy]) -> dict[str, Policy]:
    """Keep the latest revision of each policy, by revision then coordinator index."""
    latest: dict[str, Policy] = {}
    for policy in policies:
        current = latest.get(policy.policy_id)
        if current is None or _is_newer(
            policy.revision_idx,
            policy.coordinator_idx,
            current.revision_idx,
            current.coordinator_idx,
        ):
            latest[policy.policy_id] = policy
    return latest


def _policy_from_hit(hit: Any) -> Policy:
    if isinstance(hit, Policy):
        return hit
    if not isinstance(hit, Mapping):
        raise TypeError(f"unsupported hit: {type(hit).__name__}")
    if "_source" not in hit:
        return Policy.from_dict(hit)
    source = hit["_source"]
    if isinstance(source, (bytes, bytearray, str)):
        source = json.loads(source)
    if not isinstance(source, Mapping):
        raise ValueError("hit source is not a JSON object")
    doc = dict(source)
    for meta in ("_id", "_version", "_seq_no"):
        if meta in hit:
            doc[meta] = hit[meta]
    return Policy.from_dict(doc)


class PolicyMonitor:
    """Watches policy revisions and hands each new one to waiting subscribers.

    All methods must be used from the event loop that runs :meth:`run`.
    ``throttle`` is the pause in seconds between deliveries during a rollout.
    """

    def __init__(
        self,
        index_monitor: IndexMonitor,
        policy_fetcher: PolicyFetcher,
        throttle: float = 0.0,
    ) -> None:
        self._index_monitor = index_monitor
        self._policy_fetcher = policy_fetcher
        self._throttle = throttle
        self._policies: dict[str, _PolicyEntry] = {}
        self._kick: asyncio.Queue = asyncio.Queue(maxsize=1)

    async def run(self) -> None:
        """Process policy updates until cancelled."""
        log.info("run policy monitor (throttle %ss)", self._throttle)
        hit_sub = self._index_monitor.subscribe()
        kick = asyncio.ensure_future(self._kick.get())
        hits = asyncio.ensure_future(hit_sub.output.get())
        try:
            while True:
                done, _ = await asyncio.wait(
                    {kick, hits}, return_when=asyncio.FIRST_COMPLETED
                )
                if kick in done:
                    kick.result()
                    kick = asyncio.ensure_future(self._kick.get())
                    await self._process()
                if hits in done:
                    batch = hits.result()
                    hits = asyncio.ensure_future(hit_sub.output.get())
                    policies = [_policy_from_hit(hit) for hit in batch]
                    await self._process_policies(policies)
        finally:
            kick.cancel()
            hits.cancel()
            self._index_monitor.unsubscribe(hit_sub)

    async def _process(self) -> None:
        try:
            result = self._policy_fetcher()
            if inspect.isawaitable(result):
                result = await result
        except IndexNotFoundError as err:
            log.debug("policy index not found: %s", err)
            return
        policies = list(result)
        if not policies:
            log.debug("no policy to monitor")
            return
        await self._process_policies(policies)

    async def _process_policies(self, policies: list[Policy]) -> None:
        if not policies:
            return
        for policy in group_by_latest(policies).values():
            try:
                await self._rollout(policy)
            except Exception as err:
                raise RuntimeError(
                    f"failed rolling out policy {policy.policy_id}: {err}"
                ) from err

    async def _rollout(self, policy: Policy) -> None:
        parsed = ParsedPolicy.from_policy(policy)
        subs = self._update_policy(parsed)
        if subs is None:
            return
        if not subs:
            log.info("no pending subscriptions to revised policy %s", policy.policy_id)
            return

        loop = asyncio.get_running_loop()
        start = loop.time()
        log.info(
            "policy rollout begin: %s to %d subscribers", policy.policy_id, len(subs)
        )
        try:
            for sub in subs:
                if self._throttle:
                    await asyncio.sleep(self._throttle)
                try:
                    sub.output.put_nowait(parsed)
                except asyncio.QueueFull:
                    log.error(
                        "should never block on policy channel: %s", policy.policy_id
                    )
        finally:
            log.info(
                "policy rollout end: %s after %.3fs",
                policy.policy_id,
                loop.time() - start,
            )

    def _update_policy(self, parsed: ParsedPolicy) -> list[Subscription] | None:
        new = parsed.policy
        entry = self._policies.get(new.policy_id)
        if entry is None:
            self._policies[new.policy_id] = _PolicyEntry(parsed=parsed)
            log.info(
                "new policy %s rev %d coord %d",
                new.policy_id,
                new.revision_idx,
                new.coordinator_idx,
            )
            return None

        old = entry.parsed.policy if entry.parsed is not None else Policy()
        entry.parsed = parsed
        log.info(
            "policy revised %s: rev %d -> %d, coord %d -> %d",
            new.policy_id,
            old.revision_idx,
            new.revision_idx,
            old.coordinator_idx,
            new.coordinator_idx,
        )

        if new.coordinator_idx <= 0:
            log.info(
                "Do not roll out policy %s that has not passed through coordinator",
                new.policy_id,
            )
            return None

        due = [
            sub
            for sub in entry.subs.values()
            if _is_newer(
                new.revision_idx,
                new.coordinator_idx,
                sub.revision_idx,
                sub.coordinator_idx,
            )
        ]
        for sub in due:
            del entry.subs[sub.idx]
        return due

    def subscribe(
        self, agent_id: str, policy_id: str, revision_idx: int, coordinator_idx: int
    ) -> Subscription:
        """Wait for a revision of ``policy_id`` newer than the one given."""
        if revision_idx < 0:
            raise ValueError("revisionIdx must be greater than or equal to 0")
        if coordinator_idx < 0:
            raise ValueError("coordinatorIdx must be greater than or equal to 0")

        log.debug(
            "agent %s subscribed to policy %s rev %d coord %d",
            agent_id,
            policy_id,
            revision_idx,
            coordinator_idx,
        )
        sub = Subscription(
            policy_id=policy_id,
            revision_idx=revision_idx,
            coordinator_idx=coordinator_idx,
            idx=_next_index(),
        )

        entry = self._policies.get(policy_id)
        known = entry.parsed if entry is not None else None
        known_rev = known.policy.revision_idx if known is not None else 0
        known_coord = known.policy.coordinator_idx if known is not None else 0

        if (known_rev > revision_idx and known_coord > 0) or (
            known_rev == revision_idx and known_coord > coordinator_idx
        ):
            # Already due; deliver now and keep it out of the pending set.
            sub.idx = 0
            sub.output.put_nowait(known)
            return sub

        if entry is None:
            entry = _PolicyEntry()
            self._policies[policy_id] = entry
            try:
                self._kick.put_nowait(None)
            except asyncio.QueueFull:
                log.debug("kick channel full")
        entry.subs[sub.idx] = sub
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        """Drop a pending subscription; delivered ones are ignored."""
        if not isinstance(subscription, Subscription):
            raise TypeError("not a subscription returned from this monitor")
        if subscription.idx == 0:
            return
        entry = self._policies.get(subscription.policy_id)
        if entry is not None:
            entry.subs.pop(subscription.idx, None)