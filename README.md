# clairnotify

A notification service for vulnerability scanning. It watches a matcher for
new vulnerability update operations and works out which container manifests
are affected. It hands the resulting notifications to a store, and then tells
subscribed clients about them.

## How it fits together

- **`Poller`** (`clairnotify.poller`) asks the matcher for its latest update
  operations every `interval` seconds. For each operation that has no receipt
  yet, it puts an `Event` on a `queue.Queue`.
- **`Processor`** (`clairnotify.processor`) takes those events. For each one it
  takes the operation's lock and checks with `safe()` that creating
  notifications is sound: there must be no existing receipt, and the operation
  must still be the newest for its updater. It then diffs the operation against
  the previous one and asks the indexer which manifests are affected. Last, it
  stores the notifications with `Store.put_notifications`.
  - By default each manifest gets one notification, summarising its most severe
    vulnerability. Set `no_summary=True` to get one notification per
    vulnerability.
  - When nothing is affected, the processor stores a receipt that is already in
    delivered status.
- **`Delivery`** (`clairnotify.delivery`) picks up notification ids in created
  or delivery-failed status on an interval and hands them to a deliverer.
  - If the deliverer raises `DeliveryFailedError`, the id is marked delivery
    failed.
  - Otherwise the id is marked delivered. For direct deliverers it is then also
    marked deleted.
- **`Notifier`** (`clairnotify.service`) runs the poller, the processors, the
  deliveries and an hourly garbage collection in threads. It does so until a
  `threading.Event` is set or a worker fails. Build it with
  `create_notifier(store, locks, opts)` from an `Options` value.
  - Webhook, AMQP and STOMP settings are checked in that order, and only the
    first one configured is used.
  - `NoDeliveryError` is raised when none of them is usable.

The deliverers are:

- `WebhookDeliverer` (`clairnotify.webhook`) POSTs a `Callback` as JSON to a
  target URL. It can take an optional `Signer`.
- `AMQPDeliverer` and `AMQPDirectDeliverer` (`clairnotify.amqp`) publish to an
  AMQP exchange through pika. They fail over across the configured broker URIs.
- `STOMPDeliverer` and `STOMPDirectDeliverer` (`clairnotify.stomp`) send to a
  STOMP destination. They use the package's own small STOMP client,
  `StompConnection`, and fail over across `host:port` addresses.

The direct variants publish the notifications themselves, as JSON arrays of at
most `rollup` entries each, within one transaction. The others publish only a
callback carrying the notification id and the URL to fetch.

## Callback payloads

```python
from clairnotify.callback import Callback

cb = Callback.from_json(
    '{"callback": "https://example.com", '
    '"notification_id": "00000000-0000-0000-0000-000000000000"}'
)
print(cb.to_json())
# {"callback":"https://example.com","notification_id":"00000000-0000-0000-0000-000000000000"}
```

`from_json` raises `ValueError` in these cases:

- a field is missing
- the value is not a JSON object of strings
- the notification id is not a UUID

## HTTP middleware

Two WSGI middlewares come with the package:

- `AuthMiddleware` (`clairnotify.auth`) gates an application behind one or more
  `Checker`s. Requests that no checker allows get `401 Unauthorized`. `PSK`
  validates an HS256/384/512 bearer JWT signed with a pre-shared key, with 15
  seconds of leeway, and checks the token's issuer against a list. `AnyChecker`
  and `FailChecker` are also provided, and `bearer_token` extracts the token
  from a request.
- `CompressMiddleware` (`clairnotify.compress`) encodes response bodies
  according to the request's `Accept-Encoding` header. It supports these
  encodings:
  - gzip
  - deflate
  - snappy framing, written as uncompressed chunks by `snappy_frame`
  - identity

  A `*` selects gzip, or identity if gzip is refused. If both are refused, the
  response is `406 Not Acceptable`. `parse_accept` exposes the header parsing.

## Test mode

`StubIndexer` and `StubMatcher` (`clairnotify.testmode`) invent update
operations and affected manifests. When the environment variable
`NOTIFIER_TEST_MODE` is set, `create_notifier` uses them in place of the
configured indexer and matcher. The notifier then produces a test notification
on every poll.

## Debug receiver

`clairnotify.receiver.Receiver` is a WSGI app that accepts a webhook callback.
It pages through the notifications the callback points at and logs them, then
deletes them. Given a key, it signs its requests with a short-lived HS256
bearer token. Serve it with:

```
clairnotify-receiver -listen :8080
```

It takes these options:

- `-listen`: the address to listen on. The default is `:http`.
- `-key`: a base64-encoded pre-shared key.
- `-iss`: the token issuer. The default is `quay`.
- `-D`: debug output.

## What the package does not include

- **No persistence.** `Store` is an abstract interface, and the only
  implementation shipped is `MockStore`, whose behaviour you supply as
  callables. You must provide a real store backed by a database.
- **No locker.** `Locker` is abstract as well, and you must provide an
  implementation.
- **No indexer or matcher clients.** The real ones are yours to provide against
  the `Indexer` and `Matcher` interfaces. Only the test-mode stubs come with
  the package.
- **No HTTP API for clients.** There is no server that lets clients fetch or
  delete notifications. `Notifier` and `MockService` offer those operations as
  Python methods only.
- **No metrics or tracing.**

## Installing

```
pip install .
pip install ".[test]"   # adds pytest and responses
pytest
```

Python 3.10 or newer is required.