import pytest

import main
from upstreams import (
    COMEX_HOST,
    FX_HOST,
    SGE_HOST,
    hang,
    read_timeout,
    refuse,
    respond,
    sge_page,
)


def test_fetch_sge(routes, run):
    quote = run(routes, main.fetch_sge)
    assert quote.latest == 9875.0
    assert quote.open == 9850.0


def test_fetch_sge_sends_browser_headers(run):
    seen = {}

    def capture(request):
        seen.update(request.headers)
        return respond(200, text=sge_page([("Ag(T+D)", "9875", "9900", "9800")]))(request)

    run({SGE_HOST: capture}, main.fetch_sge)
    assert seen["user-agent"].startswith("Mozilla/5.0")
    assert "text/html" in seen["accept"]


def test_fetch_sge_http_status(run):
    with pytest.raises(main.HttpStatusError, match="SGE HTTP 503") as exc_info:
        run({SGE_HOST: respond(503, text="down")}, main.fetch_sge)
    assert exc_info.value.status_code == 503


def test_fetch_sge_market_closed(run):
    html = sge_page([("Ag(T+D)", "0.00", "0.00", "0.00", "0.00")])
    with pytest.raises(main.InvalidValueError, match="not found or market closed"):
        run({SGE_HOST: respond(200, text=html)}, main.fetch_sge)


def test_fetch_sge_negative_price(run):
    html = sge_page([("Ag(T+D)", "-5", "1", "1", "1")])
    with pytest.raises(main.InvalidValueError, match="not found or market closed"):
        run({SGE_HOST: respond(200, text=html)}, main.fetch_sge)


def test_fetch_fx_client_timeout(run):
    with pytest.raises(main.FetchTimeoutError, match="FX request timed out after 12.0s"):
        run({FX_HOST: read_timeout}, main.fetch_fx)


def test_fetch_comex(routes, run):
    price = run(routes, main.fetch_comex)
    assert price.price == 43.5
    assert price.prev_close == 43.08


def test_fetch_comex_http_status(run):
    with pytest.raises(main.HttpStatusError, match="COMEX HTTP 429"):
        run({COMEX_HOST: respond(429)}, main.fetch_comex)


def test_fetch_comex_invalid_json(run):
    with pytest.raises(main.InvalidValueError, match="COMEX returned invalid JSON"):
        run({COMEX_HOST: respond(200, text="<html>blocked</html>")}, main.fetch_comex)


def test_fetch_fx(routes, run):
    assert run(routes, main.fetch_fx).usd_cny == 7.15


def test_fetch_fx_rate_missing(run):
    with pytest.raises(main.NotFoundError, match="CNY rate not found"):
        run({FX_HOST: respond(200, json={"rates": {"EUR": 0.92}})}, main.fetch_fx)


def test_fetch_fx_connection_refused(run):
    with pytest.raises(main.RequestFailedError, match="FX request failed: connection refused"):
        run({FX_HOST: refuse}, main.fetch_fx)


def test_fetch_with_timeout_aborts_slow_source(run):
    with pytest.raises(main.FetchTimeoutError, match="FX request timed out after 0.05s") as exc_info:
        run({FX_HOST: hang()}, lambda client: main.fetch_with_timeout(main.fetch_fx, "FX", client, 0.05))
    assert exc_info.value.timeout_seconds == 0.05


def test_fetch_with_timeout_passes_result_through(routes, run):
    rate = run(routes, lambda client: main.fetch_with_timeout(main.fetch_fx, "FX", client, 5.0))
    assert rate.usd_cny == 7.15


def test_fetch_with_timeout_passes_source_errors_through(run):
    with pytest.raises(main.HttpStatusError):
        run({FX_HOST: respond(500)}, lambda client: main.fetch_with_timeout(main.fetch_fx, "FX", client, 5.0))
