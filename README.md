# nenya

Building blocks for a gateway that sits in front of OpenAI-compatible LLM
providers and keeps requests flowing when upstreams misbehave. All durations
are seconds, given as floats.

## Modules

### `nenya.circuitbreaker`

`CircuitBreaker(failure_threshold, success_threshold, half_open_max_requests, cooldown, on_state_change)`
keeps one circuit per key. Values of zero or less fall back to the defaults
5, 1, 1 and 60 seconds. `on_state_change(key, from_state, to_state)` is called
on every transition.

- `allow(key)`: whether a request may go ahead. A closed circuit always
  allows; an open one refuses until its cooldown has passed and then moves to
  half-open; a half-open one allows up to `half_open_max_requests` requests
  in flight.
- `record_failure(key, cooldown_override=None)`: counts a failure. The
  circuit opens after `failure_threshold` consecutive failures, or at once
  when half-open. A positive override replaces the cooldown, and on an
  already open circuit extends its expiry (never shortens it).
- `record_success(key)`: counts a success; a half-open circuit closes after
  `success_threshold` consecutive successes.
- `force_open(key, cooldown)`: opens the circuit for `cooldown` seconds;
  ignored for an empty key or a cooldown of zero or less.
- `state(key)`, `counts(key)`, `expiry(key)`: the current `State`, a copy of
  the `Counts`, and the `time.monotonic` time at which the open period ends.
  An open circuit whose cooldown has passed reads as `State.HALF_OPEN`.
- `active_count()`: circuits that are open and not yet expired.
- `snapshot()`: every key mapped to `"closed"`, `"open"` or `"half_open"`.

### `nenya.retry`

- `is_retryable_status(status_code, provider_codes=None, global_codes=None)`:
  provider codes win over global codes, which win over the defaults
  429, 500, 502, 503 and 504.
- `is_retryable_client_error(status_code, body, provider="")`: true for a
  400, 413 or 422 whose body names an error another target may not have
  (`context_length_exceeded`, `unknown_model`, `max_tokens`, ...), with extra
  patterns for providers whose name contains `anthropic`, `gemini` or
  `vertex`.
- `parse_retry_delay(headers, body)`: the delay from a `Retry-After` header,
  else from `error.details[].retryDelay` or phrases such as "retry in 3
  seconds" in `error.message`, of an object or of the first element of an
  array. Capped at 5 seconds; 0 when nothing is found.
- `parse_retry_delay_from_rpc_details(details)` and
  `parse_retry_delay_from_message(message)`: the two body parsers on their
  own; `RPCDetail` holds one details entry.
- `parse_quota_exhaustion(body)`: 30 minutes for daily quotas
  (`per 86400s`, `perday`), 5 minutes for other quota errors, else 0.
- `calculate_backoff(attempt)`: 0.5 s doubled per attempt up to 8 s, plus up
  to 0.75 s of random jitter.
- `cap_retry_delay(seconds)`: clamps to the range 0 to 5 seconds.
- `wait_with_cancel(cancel_event, seconds)`: sleeps unless the
  `threading.Event` is set first; returns True when cut short.
- `parse_go_duration(text)`: parses durations such as `"1h30m"` or `"2.5s"`
  into seconds, raising `ValueError` on bad input.

### `nenya.stream`

- `StallReader(src, timeout)`: wraps a reader; once no data has arrived for
  `timeout` seconds (120 seconds after each chunk that did arrive), `read`
  raises `StreamStalledError`. `stop()` ends the watch; it is also a context
  manager.
- `ImmediateFlushWriter(dst)`: flushes `dst` after every successful write;
  `can_flush` tells whether `dst` has a `flush` method.
- `SSETeeWriter(dst, max_bytes=0)`: writes through while keeping a copy,
  available from `captured()`. Once the copy would pass `max_bytes`,
  capturing stops and `exceeded` is set.
- `copy_stream(dst, src, buffer_size=32768, cancel_event=None)`: copies until
  EOF and returns the byte count. Stalls raise `StreamStalledError`, other
  failures `OSError` with "reading from upstream" or "writing to client",
  and a set `cancel_event` raises `ConnectionAbortedError`.
- `blocked_sse_payload()` and `write_blocked_sse(dst)`: the chat completion
  chunk that replaces a blocked response, and writing it followed by
  `data: [DONE]` as server-sent events.

## Example

```python
from nenya.circuitbreaker import CircuitBreaker, State
from nenya.retry import is_retryable_client_error, parse_retry_delay

breaker = CircuitBreaker(5, 1, 1, 60.0, None)
key = "openai:gpt-4o"

if breaker.allow(key):
    status, headers, body = 429, {"Retry-After": "3"}, b""
    breaker.record_failure(key)
    print(parse_retry_delay(headers, body))        # 3.0

print(breaker.state(key) is State.CLOSED)          # True: one failure of five
print(is_retryable_client_error(400, b'{"error":"context_length_exceeded"}'))  # True
```

## What the package does not do

It is a library of parts. It has no HTTP server, no request routing, no
configuration loading, no provider registry and no command to run; those are
for the application that uses these parts to build.

## Installation and tests

    pip install .
    pip install .[test]
    pytest