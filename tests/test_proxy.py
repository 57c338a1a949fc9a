"""
代理服务与 HTTP 路由测试

覆盖范围：
  - 请求状态机（内存 → 磁盘 → 上游 → 降级）
  - 降级优先级（过期磁盘 → 夹具 → 过期内存 → 报错）
  - 传输层提示头（Cache-Control / Retry-After / X-Data-Source）
  - 并发请求下的上游调用间隔
  - FastAPI 路由（TestClient，上游由 httpx.MockTransport 模拟）
"""

import asyncio
import json
import os
import sys
import time

import httpx
import pytest
from fastapi.testclient import TestClient

# 确保项目根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from market_proxy.config import ProxySettings
from market_proxy.errors import ClientInputError, ConfigurationError, UpstreamThrottled
from market_proxy.layers.cache import EntrySource
from market_proxy.layers.upstream import UpstreamClient
from market_proxy.layers.validation import CacheKey, Operation
from market_proxy.models.response import DataSource
from market_proxy.services.proxy_service import ProxyService, set_proxy_service

OVERVIEW_IBM = {"Symbol": "IBM", "Name": "International Business Machines"}
THROTTLE_NOTE = "Thank you for using Alpha Vantage! Our standard API rate limit is 25 requests per day."


# ─────────────────────────────────────────────────────────
# 辅助：可编排的上游
# ─────────────────────────────────────────────────────────

class FakeUpstream:
    """按顺序返回预设响应，并记录每次调用的参数与时刻"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, request: httpx.Request):
        self.calls.append((dict(request.url.params), time.monotonic()))
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(request)
        # 每次返回新的 Response，避免复用已消费的对象
        return httpx.Response(item.status_code, content=item.content, headers=item.headers)


def _json(body, status: int = 200, headers=None) -> httpx.Response:
    return httpx.Response(status, text=json.dumps(body), headers=headers)


def _make_service(tmp_path, upstream, api_key: str = "demo", min_interval: float = 0.0, **overrides) -> ProxyService:
    fields = {
        "ALPHAVANTAGE_API_KEY": api_key,
        "CACHE_DIR": str(tmp_path / "cache"),
        "FIXTURE_DIR": str(tmp_path / "fixtures"),
        "UPSTREAM_MIN_INTERVAL": min_interval,
    }
    fields.update(overrides)
    cfg = ProxySettings(**fields)
    client = UpstreamClient(
        api_key=cfg.ALPHAVANTAGE_API_KEY,
        base_url="https://upstream.test/query",
        timeout=cfg.UPSTREAM_TIMEOUT,
        daily_output_size=cfg.DAILY_OUTPUT_SIZE,
        default_retry_after=cfg.THROTTLE_RETRY_AFTER,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
    )
    return ProxyService(cfg, upstream=client)


def _write_disk_record(tmp_path, stem: str, payload, saved_at: float) -> None:
    cache_dir = tmp_path / "cache"
    cache_dir.mkdir(exist_ok=True)
    record = {"savedAt": saved_at, "payload": payload}
    (cache_dir / f"{stem}.json").write_text(json.dumps(record), encoding="utf-8")


def _write_fixture(tmp_path, stem: str, doc) -> None:
    fixture_dir = tmp_path / "fixtures"
    fixture_dir.mkdir(exist_ok=True)
    (fixture_dir / f"{stem}.json").write_text(json.dumps(doc), encoding="utf-8")


def _run(svc: ProxyService, *requests):
    """在同一个事件循环中依次执行多次请求，返回响应或异常"""

    async def scenario():
        results = []
        try:
            for operation, symbol in requests:
                try:
                    results.append(await svc.handle(operation, symbol))
                except Exception as exc:
                    results.append(exc)
        finally:
            await svc.stop()
        return results

    return asyncio.run(scenario())


# ─────────────────────────────────────────────────────────
# 1. 请求状态机
# ─────────────────────────────────────────────────────────

class TestStateMachine:
    def test_upstream_then_memory(self, tmp_path):
        upstream = FakeUpstream(_json(OVERVIEW_IBM))
        svc = _make_service(tmp_path, upstream)
        first, second, third = _run(svc, ("OVERVIEW", "IBM"), ("OVERVIEW", "IBM"), ("overview", "IBM"))

        assert first.envelope.source is DataSource.UPSTREAM
        assert first.envelope.cached is False
        assert second.envelope.source is DataSource.MEMORY
        assert third.envelope.source is DataSource.MEMORY
        assert second.envelope.cached is True
        assert second.envelope.stale is False
        assert first.envelope.data == second.envelope.data == third.envelope.data == OVERVIEW_IBM
        assert len(upstream.calls) == 1

    def test_upstream_success_writes_through(self, tmp_path):
        svc = _make_service(tmp_path, FakeUpstream(_json(OVERVIEW_IBM)))
        _run(svc, ("OVERVIEW", "IBM"))
        with open(tmp_path / "cache" / "OVERVIEW__IBM.json", encoding="utf-8") as fh:
            assert json.load(fh)["payload"] == OVERVIEW_IBM
        entry = svc.memory.get(CacheKey(operation=Operation.OVERVIEW, symbol="IBM"))
        assert entry.source is EntrySource.UPSTREAM

    def test_fresh_disk_hit_skips_upstream(self, tmp_path):
        _write_disk_record(tmp_path, "OVERVIEW__IBM", OVERVIEW_IBM, saved_at=time.time())
        upstream = FakeUpstream(_json({"Symbol": "OTHER"}))
        svc = _make_service(tmp_path, upstream)
        first, second = _run(svc, ("OVERVIEW", "IBM"), ("OVERVIEW", "IBM"))

        assert first.envelope.source is DataSource.DISK
        assert first.envelope.data == OVERVIEW_IBM
        assert "s-maxage=86400" in first.headers["Cache-Control"]
        assert second.envelope.source is DataSource.MEMORY
        assert upstream.calls == []

    def test_stale_disk_goes_upstream(self, tmp_path):
        _write_disk_record(tmp_path, "OVERVIEW__IBM", {"old": True}, saved_at=time.time() - 2 * 86400)
        upstream = FakeUpstream(_json(OVERVIEW_IBM))
        (resp,) = _run(_make_service(tmp_path, upstream), ("OVERVIEW", "IBM"))
        assert resp.envelope.source is DataSource.UPSTREAM
        assert resp.envelope.data == OVERVIEW_IBM
        assert len(upstream.calls) == 1

    def test_daily_ttl_and_params(self, tmp_path):
        upstream = FakeUpstream(_json({"Time Series (Daily)": {}}))
        (resp,) = _run(_make_service(tmp_path, upstream), ("TIME_SERIES_DAILY", "BRK.B"))
        assert resp.headers["Cache-Control"] == "public, max-age=0, s-maxage=3600"
        assert resp.headers["X-Data-Source"] == "upstream"
        params, _ = upstream.calls[0]
        assert params == {"function": "TIME_SERIES_DAILY", "symbol": "BRK.B", "apikey": "demo", "outputsize": "compact"}

    @pytest.mark.parametrize("symbol", ["", "ibm", "IBM/../X", "ABCDEFGHIJK", "../../etc"])
    def test_invalid_input_has_no_side_effects(self, tmp_path, symbol):
        upstream = FakeUpstream(_json(OVERVIEW_IBM))
        svc = _make_service(tmp_path, upstream)
        (result,) = _run(svc, ("OVERVIEW", symbol))
        assert isinstance(result, ClientInputError)
        assert upstream.calls == []
        assert len(svc.memory) == 0
        assert not (tmp_path / "cache").exists()

    def test_missing_api_key(self, tmp_path):
        upstream = FakeUpstream(_json(OVERVIEW_IBM))
        (result,) = _run(_make_service(tmp_path, upstream, api_key=""), ("OVERVIEW", "IBM"))
        assert isinstance(result, ConfigurationError)
        assert result.status_code == 500
        assert upstream.calls == []

    def test_disk_write_failure_does_not_fail_request(self, tmp_path):
        blocker = tmp_path / "blocked"
        blocker.write_text("x", encoding="utf-8")
        upstream = FakeUpstream(_json(OVERVIEW_IBM))
        svc = _make_service(tmp_path, upstream, CACHE_DIR=str(blocker))
        first, second = _run(svc, ("OVERVIEW", "IBM"), ("OVERVIEW", "IBM"))
        assert first.envelope.source is DataSource.UPSTREAM
        assert second.envelope.source is DataSource.MEMORY


# ─────────────────────────────────────────────────────────
# 2. 降级优先级
# ─────────────────────────────────────────────────────────

class TestFallback:
    def test_throttle_prefers_stale_disk(self, tmp_path):
        stale = {"Symbol": "IBM", "stale": True}
        _write_disk_record(tmp_path, "OVERVIEW__IBM", stale, saved_at=0)
        _write_fixture(tmp_path, "OVERVIEW__IBM", {"Symbol": "FIXTURE"})
        svc = _make_service(tmp_path, FakeUpstream(_json({"Note": THROTTLE_NOTE})))
        (resp,) = _run(svc, ("OVERVIEW", "IBM"))

        env = resp.envelope
        assert (env.ok, env.stale, env.cached, env.source) == (True, True, True, DataSource.DISK_STALE)
        assert env.data == stale
        assert env.warning == THROTTLE_NOTE
        assert resp.headers["Retry-After"] == "1"
        assert "Cache-Control" not in resp.headers
        rehydrated = svc.memory.get(CacheKey(operation=Operation.OVERVIEW, symbol="IBM"))
        assert rehydrated.payload == stale
        assert rehydrated.saved_at == 0

    def test_throttle_uses_fixture_when_no_disk(self, tmp_path):
        _write_fixture(tmp_path, "OVERVIEW__IBM", {"payload": OVERVIEW_IBM})
        upstream = FakeUpstream(_json({"Information": THROTTLE_NOTE}))
        svc = _make_service(tmp_path, upstream)
        first, second = _run(svc, ("OVERVIEW", "IBM"), ("OVERVIEW", "IBM"))

        env = first.envelope
        assert (env.ok, env.source, env.cached, env.stale) == (True, DataSource.FIXTURE, True, False)
        assert env.data == OVERVIEW_IBM
        assert env.warning == THROTTLE_NOTE
        # 夹具已回填两级缓存，第二次直接走内存
        assert second.envelope.source is DataSource.MEMORY
        assert len(upstream.calls) == 1
        with open(tmp_path / "cache" / "OVERVIEW__IBM.json", encoding="utf-8") as fh:
            assert json.load(fh)["payload"] == OVERVIEW_IBM

    def test_throttle_without_fallback_is_429(self, tmp_path):
        (result,) = _run(_make_service(tmp_path, FakeUpstream(_json({"Note": THROTTLE_NOTE}))), ("OVERVIEW", "IBM"))
        assert isinstance(result, UpstreamThrottled)
        assert result.status_code == 429
        assert result.headers["Retry-After"] == "1"
        assert result.message == THROTTLE_NOTE

    def test_stale_memory_is_last_resort(self, tmp_path):
        svc = _make_service(tmp_path, FakeUpstream(httpx.Response(200, text="<html>maintenance</html>")))
        key = CacheKey(operation=Operation.OVERVIEW, symbol="IBM")
        svc.memory.set(key, OVERVIEW_IBM, EntrySource.UPSTREAM, saved_at=0)
        (resp,) = _run(svc, ("OVERVIEW", "IBM"))
        env = resp.envelope
        assert (env.source, env.stale, env.cached) == (DataSource.MEMORY, True, True)
        assert env.warning == "Upstream returned non-JSON; served fallback data."

    def test_empty_disk_payload_is_not_usable(self, tmp_path):
        _write_disk_record(tmp_path, "OVERVIEW__IBM", {}, saved_at=0)
        _write_fixture(tmp_path, "OVERVIEW__IBM", OVERVIEW_IBM)
        svc = _make_service(tmp_path, FakeUpstream(_json({"Error Message": "Invalid API call."})))
        (resp,) = _run(svc, ("OVERVIEW", "IBM"))
        assert resp.envelope.source is DataSource.FIXTURE
        assert resp.envelope.warning == "Alpha Vantage error: Invalid API call."
        assert "Retry-After" not in resp.headers

    @pytest.mark.parametrize(
        "response, status, message",
        [
            (httpx.Response(200, text="not json"), 502,
             "Upstream returned non-JSON response and no fallback is available."),
            (httpx.Response(200, json={"Error Message": "Invalid API call."}), 502,
             "Alpha Vantage error: Invalid API call."),
            (httpx.Response(503, json={"detail": "down"}), 502, "Upstream HTTP 503"),
        ],
    )
    def test_terminal_upstream_errors(self, tmp_path, response, status, message):
        (result,) = _run(_make_service(tmp_path, FakeUpstream(response)), ("OVERVIEW", "IBM"))
        assert result.status_code == status
        assert result.message == message

    def test_timeout_without_fallback_is_504(self, tmp_path):
        def timeout(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        (result,) = _run(_make_service(tmp_path, FakeUpstream(timeout)), ("OVERVIEW", "IBM"))
        assert result.status_code == 504
        assert result.message == "Upstream request timed out."

    def test_network_failure_falls_back_to_disk(self, tmp_path):
        _write_disk_record(tmp_path, "TIME_SERIES_DAILY__IBM", {"series": [1]}, saved_at=0)
        def refused(request):
            raise httpx.ConnectError("connection refused", request=request)

        svc = _make_service(tmp_path, FakeUpstream(refused))
        (resp,) = _run(svc, ("TIME_SERIES_DAILY", "IBM"))
        assert resp.envelope.source is DataSource.DISK_STALE
        assert resp.envelope.warning == "Upstream fetch failed."
        assert "Retry-After" not in resp.headers


# ─────────────────────────────────────────────────────────
# 3. 并发与调度
# ─────────────────────────────────────────────────────────

class TestConcurrency:
    def test_concurrent_requests_are_spaced(self, tmp_path):
        upstream = FakeUpstream(lambda request: _json({"Symbol": request.url.params["symbol"]}))
        svc = _make_service(tmp_path, upstream, min_interval=0.05)
        symbols = ["AAPL", "MSFT", "IBM", "KO", "PEP", "V"]

        async def scenario():
            try:
                return await asyncio.gather(*[svc.handle("OVERVIEW", s) for s in symbols])
            finally:
                await svc.stop()

        responses = asyncio.run(scenario())
        assert [r.envelope.data["Symbol"] for r in responses] == symbols
        stamps = [t for _, t in upstream.calls]
        assert len(stamps) == len(symbols)
        gaps = [b - a for a, b in zip(stamps, stamps[1:])]
        assert all(gap >= 0.045 for gap in gaps)
        assert sorted(p["symbol"] for p, _ in upstream.calls) == sorted(symbols)


# ─────────────────────────────────────────────────────────
# 4. HTTP 路由测试
# ─────────────────────────────────────────────────────────

@pytest.fixture
def make_client(tmp_path):
    """注入隔离的 ProxyService 并启动 TestClient"""
    clients = []

    def factory(upstream, **kwargs):
        svc = _make_service(tmp_path, upstream, **kwargs)
        set_proxy_service(svc)
        from market_proxy.main import app
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client, svc

    yield factory
    for client in clients:
        client.__exit__(None, None, None)
    set_proxy_service(None)


class TestProxyRoutes:
    def test_upstream_then_memory(self, make_client):
        upstream = FakeUpstream(_json(OVERVIEW_IBM))
        client, _ = make_client(upstream)
        r1 = client.get("/proxy", params={"operation": "OVERVIEW", "symbol": "IBM"})
        r2 = client.get("/proxy", params={"operation": "OVERVIEW", "symbol": "IBM"})

        assert r1.status_code == 200
        assert r1.json() == {"ok": True, "data": OVERVIEW_IBM, "cached": False, "stale": False, "source": "upstream"}
        assert r1.headers["cache-control"] == "public, max-age=0, s-maxage=86400"
        assert r1.headers["x-data-source"] == "upstream"
        assert "x-process-time" in r1.headers
        assert r2.json()["source"] == "memory"
        assert r2.json()["data"] == OVERVIEW_IBM
        assert len(upstream.calls) == 1

    def test_function_alias(self, make_client):
        client, _ = make_client(FakeUpstream(_json(OVERVIEW_IBM)))
        r = client.get("/proxy", params={"function": "overview", "symbol": "IBM"})
        assert r.status_code == 200
        assert r.json()["source"] == "upstream"

    @pytest.mark.parametrize(
        "params",
        [
            {"operation": "OVERVIEW", "symbol": "ibm"},
            {"operation": "OVERVIEW", "symbol": "A/B"},
            {"operation": "OVERVIEW"},
            {"operation": "QUOTE", "symbol": "IBM"},
            {"symbol": "IBM"},
        ],
    )
    def test_validation_errors(self, make_client, params):
        upstream = FakeUpstream(_json(OVERVIEW_IBM))
        client, _ = make_client(upstream)
        r = client.get("/proxy", params=params)
        assert r.status_code == 400
        body = r.json()
        assert body["ok"] is False
        assert set(body) == {"ok", "error"}
        assert upstream.calls == []

    def test_throttled_without_fallback(self, make_client):
        client, _ = make_client(FakeUpstream(_json({"Note": THROTTLE_NOTE}, headers={"Retry-After": "20"})))
        r = client.get("/proxy", params={"operation": "OVERVIEW", "symbol": "IBM"})
        assert r.status_code == 429
        assert r.headers["retry-after"] == "20"
        assert r.json() == {"ok": False, "error": THROTTLE_NOTE}

    def test_throttled_with_stale_disk(self, make_client, tmp_path):
        _write_disk_record(tmp_path, "OVERVIEW__IBM", OVERVIEW_IBM, saved_at=0)
        client, _ = make_client(FakeUpstream(_json({"Note": THROTTLE_NOTE})))
        r = client.get("/proxy", params={"operation": "OVERVIEW", "symbol": "IBM"})
        assert r.status_code == 200
        body = r.json()
        assert body["stale"] is True
        assert body["source"] == "disk-stale"
        assert body["data"] == OVERVIEW_IBM
        assert body["warning"] == THROTTLE_NOTE
        assert r.headers["retry-after"] == "1"

    def test_missing_credential_is_500(self, make_client):
        client, _ = make_client(FakeUpstream(_json(OVERVIEW_IBM)), api_key="")
        r = client.get("/proxy", params={"operation": "OVERVIEW", "symbol": "IBM"})
        assert r.status_code == 500
        assert r.json() == {"ok": False, "error": "Server misconfigured: missing ALPHAVANTAGE_API_KEY"}

    def test_timeout_is_504(self, make_client):
        def timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client, _ = make_client(FakeUpstream(timeout))
        r = client.get("/proxy", params={"operation": "OVERVIEW", "symbol": "IBM"})
        assert r.status_code == 504
        assert r.json()["ok"] is False


class TestOperationalRoutes:
    def test_health(self, make_client):
        client, _ = make_client(FakeUpstream(_json(OVERVIEW_IBM)))
        r = client.get("/health")
        assert r.status_code == 200
        data = r.json()["data"]
        assert data["status"] == "ok"
        assert data["upstream"]["configured"] is True
        assert "memory" in data["cache"]

    def test_probes_and_root(self, make_client):
        client, _ = make_client(FakeUpstream(_json(OVERVIEW_IBM)))
        assert client.get("/healthz").json()["status"] == "ok"
        assert client.get("/readyz").json()["ready"] is True
        root = client.get("/").json()
        assert "version" in root
        assert root["docs"] == "/docs"

    def test_cache_stats_and_evict(self, make_client):
        upstream = FakeUpstream(_json(OVERVIEW_IBM))
        client, svc = make_client(upstream)
        client.get("/proxy", params={"operation": "OVERVIEW", "symbol": "IBM"})

        stats = client.get("/api/cache/stats").json()["data"]
        assert stats["memory"]["entries"] == 1
        assert stats["disk"]["records"] == 1
        assert stats["scheduler"]["calls"] == 1

        r = client.delete("/api/cache/OVERVIEW/IBM")
        assert r.status_code == 200
        assert r.json()["data"] == {"key": "OVERVIEW:IBM", "memory": True, "disk": True}
        assert len(svc.memory) == 0

        client.get("/proxy", params={"operation": "OVERVIEW", "symbol": "IBM"})
        assert len(upstream.calls) == 2

    def test_evict_validates_input(self, make_client):
        client, _ = make_client(FakeUpstream(_json(OVERVIEW_IBM)))
        r = client.delete("/api/cache/OVERVIEW/ibm")
        assert r.status_code == 400
        assert r.json()["ok"] is False
