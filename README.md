# fleetcore

Building blocks for a server that hands policies out to managed agents.

- `fleetcore.monitor.PolicyMonitor` is an asyncio monitor. It takes policy
  documents from an index monitor and from a policy fetcher. When a newer,
  coordinated revision of a policy appears, it notifies the agents subscribed
  to that policy. Each subscription is one-shot, and each policy arrives on
  the subscription's `output` queue. An optional throttle, in seconds, spaces
  out the rollout. `group_by_latest` keeps the latest revision of each policy.
- `fleetcore.self_monitor.SelfMonitor` waits until the server's own policy
  exists and holds a `fleet-server` input, then reports its health through a
  `fleetcore.status.Reporter`. It checks on a timer and on every index update.
  If no agent id is configured, the status is `DEGRADED` and the first active
  enrollment key is passed along in the report's payload.
- `fleetcore.output_permissions` turns the `default` section of a policy's
  `output_permissions` into role descriptors with a stable SHA-256 hash.
  `get_role_descriptors` returns the hash and the canonical JSON.
  `check_output_permissions_changed` returns `(hash, roles, changed)`.
- `fleetcore.parsed_policy` has the `Policy` record, and `ParsedPolicy`, which
  decodes a policy's fields and its per-output `Role`s.
- `fleetcore.revision.Revision` converts between policies and action ids of
  the form `policy:<id>:<revision>:<coordinator>`.
- `fleetcore.throttle.Throttle` hands out at most one live token per key and
  at most `max_parallel` live tokens in total. Zero means no total limit.
  Each token expires after its TTL.
- `fleetcore.ver.check_compatibility` raises `UnsupportedVersionError` unless
  the Elasticsearch version is at least the fleet version's `major.minor.0`.
  A pre-release Elasticsearch version never passes. Versions that cannot be
  parsed raise `MalformedVersionError`.
- Smaller helpers:
  - `fleetcore.smap`: JSON objects with a canonical encoding and hash.
  - `fleetcore.sqn`: sequence numbers.
  - `fleetcore.rnd`: random test data.
  - `fleetcore.sleep.sleep_with_cancel`: a sleep that can be cut short.
  - `fleetcore.status`: status reporters.
  - `fleetcore.reload.ReloadManager`: passes a reload on to several managers.
  - `fleetcore.interrupt.handle_interrupt`: a context manager that yields an
    event, set on SIGINT or SIGTERM.

## Installation

```
pip install .
```

The package has no runtime dependencies. The tests need the `test` extra:

```
pip install ".[test]"
pytest
```

## Examples

```python
from fleetcore.revision import Revision

rev = Revision.parse("policy:abc:3:1")
print(rev.revision_idx, str(rev))  # 3 policy:abc:3:1
```

```python
from fleetcore.throttle import Throttle

throttle = Throttle(max_parallel=2)
slot = throttle.acquire("agent-1", ttl=60.0)
if slot is not None:
    try:
        ...  # do the work for agent-1
    finally:
        slot.release()
```

```python
from fleetcore.ver import check_compatibility, UnsupportedVersionError

try:
    check_compatibility("8.0.0", "7.18.0")
except UnsupportedVersionError:
    print("Elasticsearch is too old")
```

## What it does not do

This package has no Elasticsearch client, index monitor, HTTP server, storage
or command-line program. You supply the index monitor, the policy fetcher and
the enrollment key fetcher that the monitors use. The index monitor is any
object with `subscribe()` and `unsubscribe()`, where the subscription's
`output` queue yields batches of hits.