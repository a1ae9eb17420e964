# bifrost

Building blocks for an HTTP API gateway, usable from plain Python code. There
is no command line: you import the modules and call them.

## What is in the package

- **Request context** (`bifrost.request`): `RequestContext`, `Request`,
  `Response`, `Headers`, `TraceStats` and `RequestOriginal`. A context holds
  one request and its response, the per-request variables (`get`, `set`,
  `get_string`, `get_bool`, `get_int`) and a chain of handlers. `next()` runs
  the rest of the chain, and `abort()` stops it. `Headers` is ordered,
  case-insensitive and multi-valued.
- **Variables** (`bifrost.variable`): `get`, `get_string`, `get_int`,
  `get_float`, `get_bool` and `is_directive`. They resolve directives such as
  `$client_ip`, `$upstream.request.uri`, `$http.request.header.<name>`,
  `$http.response.header.<name>` or `$var.<name>` against a context. `get`
  returns `None` when a directive has no value. The `$http.request.*` and
  `$server_id` directives read the `RequestOriginal` that is stored under
  `variable.REQUEST_ORIG`.
- **Middlewares** (`bifrost.middlewares`). Every middleware is a callable that
  takes a `RequestContext`. Each module has a `create_middleware(params)`
  factory that builds the middleware from a configuration mapping. Importing
  a module registers its factory under a kind name in
  `bifrost.middlewares.registry` (`register_middleware`,
  `find_handler_by_type`). Registering the same kind twice raises
  `MiddlewareExistsError`.

  | module | kind | what it does |
  |---|---|---|
  | `add_prefix` | `add_prefix` | prepends a prefix to the path |
  | `strip_prefix` | `strip_prefix` | removes the first matching prefix |
  | `replace_path` | `replace_path` | replaces the whole path |
  | `replace_path_regex` | `replace_path_regex` | regex replacement (`$1`, `${name}`) |
  | `set_vars` | `setvars` | stores fixed variables on the context |
  | `request_termination` | `request-termination` | answers with a fixed status, content type and body, then aborts |
  | `request_transformer` | `request-transformer` | removes and adds request headers and query parameters |
  | `response_transformer` | `response-transformer` | removes and adds response headers |
  | `traffic_splitter` | `traffic-splitter` | stores a weighted random destination in a variable |
  | `rate_limiting` | `rate-limiting` | fixed-window rate limiting |

  The rate-limiting middleware counts with `LocalLimiter` (strategy `local`)
  or with `RedisLimiter` (strategy `redis`). The package does not ship a
  Redis client. You pass any object with a redis-py style
  `eval(script, numkeys, *keys_and_args)` method to `register_redis_client`,
  and then refer to it by `redis_id`. If the Redis call fails, the request is
  allowed. `LocalAsyncRedisLimiter` is a token bucket that syncs with Redis in
  the background and can be used on its own.
- **Access logging** (`bifrost.accesslog`): `AccessLogTracer` renders a
  template of `$` directives for every finished request that has an
  `http_start` event. It writes the line through a `BufferedLogger` to a
  file, to `stderr`, or nowhere when `output` is empty. Values can be escaped
  with `EscapeType.DEFAULT`, `EscapeType.JSON` or `EscapeType.NONE` (see
  `escape`). `parse_directives` lists the directives in a template.
- **Proxy helpers** (`bifrost.proxy`): the `Proxy` protocol,
  `MaxFailedCountError`, `join_url_path`, `full_uri` and `is_ascii_print`.
- **File configuration provider** (`bifrost.file_provider`): `FileProvider`
  reads every `.yaml`, `.yml` and `.json` file under its paths (or the
  extensions you configure) and returns them as `ContentInfo`. `watch()`
  watches the paths with watchdog and calls the function given to
  `set_on_changed` once changes have been quiet for about 0.9 seconds.
- **Zero-downtime upgrades** (`bifrost.zero`): `ZeroDownTime` keeps
  listening sockets (`listener`). `wait_for_upgrade()` serves a Unix upgrade
  socket. On each connection it starts a new process (`ZeroOptions.command`,
  or the running program again) that inherits the sockets through the
  `UPGRADE` and `LISTENERS` environment variables. `upgrade()` triggers
  that, and `shutdown()` terminates the process named in the PID file.
- **Time cache** (`bifrost.timecache`): `TimeCache(interval)` holds a clock
  that is refreshed every `interval` seconds. An interval of 0 means one
  second, and the minimum is one millisecond. `now()` reads the cache set
  with `set_default`, or the real time when no cache is set.

## Examples

Run a handler chain and read variables:

```python
from bifrost import variable
from bifrost.middlewares.add_prefix import AddPrefixMiddleware
from bifrost.request import RequestContext

c = RequestContext()
c.request.set_request_uri("http://example.com/foo?bar=baz")
c.handlers = [AddPrefixMiddleware("/api/v1")]
c.next()

c.request.path                                  # "/api/v1/foo"
variable.get_string("$upstream.request.uri", c)  # "/api/v1/foo?bar=baz"
variable.is_directive("$abc")                   # False
```

Build a middleware from configuration through the registry:

```python
import bifrost.middlewares.rate_limiting  # registers "rate-limiting"
from bifrost.middlewares.registry import find_handler_by_type

factory = find_handler_by_type("rate-limiting")
limiter = factory({
    "strategy": "local",
    "limit": 3,
    "limit_by": "$client_ip",
    "window_size": "10s",
})
```

Use a cached clock:

```python
from bifrost import timecache

with timecache.TimeCache(1.0) as cache:
    timecache.set_default(cache)
    print(timecache.now())
timecache.set_default(None)
```

## What the package does not do

It has no HTTP server and does not forward requests upstream. `Proxy` only
describes what an upstream must offer, and there is no HTTP or gRPC
implementation of it. `FileProvider` returns file text but does not parse it
into a gateway configuration. There are no metrics or distributed tracing.

## Running the tests

Install the `test` extra, then run `pytest` from the project root.