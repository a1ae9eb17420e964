import pytest

from bifrost import variable
from bifrost.accesslog import (
    AccessLogOptions,
    AccessLogTracer,
    BufferedLogger,
    EscapeType,
    escape,
    parse_directives,
)
from bifrost.request import RequestContext, RequestOriginal, TraceStats

CONTENT = '{"label": "hello 您好 ~"}'


@pytest.mark.parametrize(
    "text, escape_type, expected",
    [
        ("", EscapeType.DEFAULT, ""),
        ("hello 您好", EscapeType.DEFAULT, r"hello \xe6\x82\xa8\xe5\xa5\xbd"),
        (CONTENT, EscapeType.JSON, r'{\"label\": \"hello 您好 ~\"}'),
        (CONTENT, EscapeType.NONE, CONTENT),
        (CONTENT, " invalid", CONTENT),
    ],
)
def test_escape(text, escape_type, expected):
    assert escape(text, escape_type) == expected


def test_escape_json_control_characters():
    assert escape("a\nb\t\x01", EscapeType.JSON) == "a\\nb\\t\\u0001"


def test_escape_default_quotes_and_newline():
    assert escape('"\n', "default") == r"\x22\xa"


def test_parse_directives_sorted_longest_first():
    assert parse_directives("$a $bb $ab.c x") == ["$ab.c", "$bb", "$a"]


def test_parse_directives_keeps_dashed_names():
    result = parse_directives("$http.request.header.user-agent -")
    assert result == ["$http.request.header.user-agent"]


def _context():
    c = RequestContext()
    c.request.method = "GET"
    c.request.set_request_uri("/foo?bar=baz")
    c.set(
        variable.REQUEST_ORIG,
        RequestOriginal(
            host="abc.com", method="GET", path="/foo", query="bar=baz", protocol="HTTP/1.1"
        ),
    )
    c.trace_stats = TraceStats()
    c.trace_stats.record("http_start")
    return c


def _run(tmp_path, template, c, **kwargs):
    out = tmp_path / "access.log"
    tracer = AccessLogTracer(AccessLogOptions(output=str(out), template=template, **kwargs))
    tracer.start(c)
    tracer.finish(c)
    tracer.close()
    return out.read_text(encoding="utf-8")


def test_tracer_renders_template(tmp_path):
    text = _run(
        tmp_path,
        "  $http.request.method   $http.request.uri $http.response.status_code ",
        _context(),
    )
    assert text == "GET /foo?bar=baz 200\n"


def test_tracer_escapes_body_as_json(tmp_path):
    c = _context()
    c.request.body = b'{"a":1}'
    text = _run(tmp_path, "$http.request.body", c, escape=EscapeType.JSON)
    assert text == '{\\"a\\":1}\n'


def test_tracer_ignores_grpc_body(tmp_path):
    c = _context()
    c.request.body = b"\x00\x00"
    c.request.headers.set("Content-Type", "application/grpc")
    assert _run(tmp_path, "[$http.request.body]", c) == "[]\n"


def test_tracer_client_disconnected_is_499(tmp_path):
    c = _context()
    c.trace_stats.error = "client disconnected"
    assert _run(tmp_path, "$http.response.status_code", c) == "499\n"


def test_tracer_unknown_variable_is_empty(tmp_path):
    assert _run(tmp_path, "x=$unknown", _context()) == "x=\n"


def test_tracer_time_is_replaced(tmp_path):
    text = _run(tmp_path, "$time", _context())
    assert "$time" not in text
    assert text.endswith("\n") and len(text) > 1


def test_tracer_skips_request_without_start(tmp_path):
    c = _context()
    c.trace_stats = TraceStats()
    assert _run(tmp_path, "$http.request.method", c) == ""


def test_buffered_logger_holds_until_flush(tmp_path):
    out = tmp_path / "buf.log"
    with BufferedLogger(AccessLogOptions(output=str(out), buffer_size=1024)) as log:
        log.write("ab")
        assert out.read_text() == ""
        log.flush()
        assert out.read_text() == "ab"


def test_buffered_logger_drains_when_full(tmp_path):
    out = tmp_path / "full.log"
    with BufferedLogger(AccessLogOptions(output=str(out), buffer_size=8)) as log:
        log.write("0123456789")
        assert out.read_text() == "0123456789"


def test_buffered_logger_defaults(tmp_path):
    log = BufferedLogger(AccessLogOptions(output=str(tmp_path / "d.log")))
    try:
        assert log.buffer_size == 64 * variable.KB
        assert log.flush_interval.total_seconds() == 60
    finally:
        log.close()