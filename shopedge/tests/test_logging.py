# shopedge/tests/test_logging.py
import json
import logging

from shopedge.logging import JSONFormatter, anonymize_ip, bind, log_context, log_security_event, scrub_dict


class _Collect(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


def _logger(name):
    lg = logging.getLogger(name)
    lg.handlers = []
    handler = _Collect()
    lg.addHandler(handler)
    lg.setLevel(logging.DEBUG)
    lg.propagate = False
    return lg, handler


def test_formatter_envelope_and_context():
    rec = logging.LogRecord("shopedge.test", logging.INFO, __file__, 1, "edge %s", ("redirect",), None)
    rec.password = "hunter2"
    rec.tier = "general"
    rec.upstream_status = 401
    with log_context(req_id="abc123", path="/en/orders"):
        bind(decision="redirect_signin")
        out = json.loads(JSONFormatter(service="edge-test", env="ci").format(rec))
    with log_context():
        after = json.loads(JSONFormatter().format(rec))

    assert out["msg"] == "edge redirect"
    assert out["req_id"] == "abc123"
    assert out["path"] == "/en/orders"
    assert out["decision"] == "redirect_signin"
    assert out["tier"] == "general"
    assert out["meta"] == {"upstream_status": 401}
    assert "hunter2" not in json.dumps(out)
    assert (out["service"], out["env"]) == ("edge-test", "ci")
    assert "req_id" not in after and "decision" not in after


def test_anonymize_ip():
    assert anonymize_ip("203.0.113.42") == "203.0.113.x"
    assert anonymize_ip("2001:db8:85a3::8a2e:370:7334") == "2001:db8:85a3:*"
    assert anonymize_ip("unknown") == "*"


def test_scrub_dict_redacts_credentials():
    out = scrub_dict({"Cookie": "session-token=abc", "authorization": "Bearer t", "accept": "text/html"})
    assert out == {"Cookie": "***", "authorization": "***", "accept": "text/html"}


def test_security_event_is_coarse():
    lg, handler = _logger("shopedge.tests.security")
    log_security_event(
        lg,
        event="rate_limited",
        reason="rate_limited",
        client_ip="198.51.100.23",
        extra={"tier": "auth", "access_token": "tok-1"},
    )
    (rec,) = handler.records
    assert rec.levelno == logging.WARNING
    assert rec.getMessage() == "edge_security_event"
    assert rec.client == "198.51.100.x"
    assert rec.tier == "auth"
    assert not hasattr(rec, "access_token")
