"""
Unit Tests: Install script downloads
=================================================
Tests:
  1. URI placeholders resolved against the variable map
  2. 5xx / transport errors retried, then success
  3. 404 fails at once, sibling scripts still download
  4. Exhausted retries are logged at ERROR, never raised
  5. Destination outside the volume is refused
  6. Non-transport httpx errors (redirect loops) fail one script only
"""

import asyncio
import logging

import httpx

from node_commander.downloads import ScriptFetcher
from node_commander.models import InstallScript


def _fetcher(handler, attempts=3):
    return ScriptFetcher(
        max_attempts=attempts, retry_backoff=0, transport=httpx.MockTransport(handler)
    )


def _script(uri, path):
    return InstallScript(Uri=uri, Path=path)


class TestScriptFetcher:

    def test_uri_variables_and_nested_destination(self, tmp_path):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, content=b"echo {{primaryPort}}\n")

        results = asyncio.run(_fetcher(handler).fetch_all(
            [_script("https://get.example/{{VERSION}}/start.sh", "bin/start.sh")],
            str(tmp_path), {"VERSION": "1.20.4"},
        ))

        assert seen == ["https://get.example/1.20.4/start.sh"]
        assert results[0].ok and results[0].attempts == 1
        assert (tmp_path / "bin" / "start.sh").read_bytes() == b"echo {{primaryPort}}\n"

    def test_transient_failures_retried(self, tmp_path):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            if calls["n"] == 1:
                raise httpx.ConnectError("connection reset", request=request)
            if calls["n"] == 2:
                return httpx.Response(503)
            return httpx.Response(200, content=b"ok")

        results = asyncio.run(_fetcher(handler).fetch_all(
            [_script("https://get.example/a", "a.txt")], str(tmp_path), {},
        ))
        assert results[0].ok
        assert results[0].attempts == 3
        assert (tmp_path / "a.txt").read_bytes() == b"ok"

    def test_permanent_failure_does_not_stop_siblings(self, tmp_path, caplog):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            if request.url.path == "/missing":
                return httpx.Response(404)
            return httpx.Response(200, content=b"data")

        with caplog.at_level(logging.ERROR, logger="node_commander.downloads"):
            results = asyncio.run(_fetcher(handler).fetch_all(
                [_script("https://h/missing", "one.sh"), _script("https://h/present", "two.sh")],
                str(tmp_path), {},
            ))

        assert [r.ok for r in results] == [False, True]
        assert calls == ["/missing", "/present"]   # 404 not retried
        assert not (tmp_path / "one.sh").exists()
        assert (tmp_path / "two.sh").exists()
        assert "one.sh" in caplog.text

    def test_exhausted_retries_logged_not_raised(self, tmp_path, caplog):
        def handler(request):
            return httpx.Response(500)

        with caplog.at_level(logging.ERROR, logger="node_commander.downloads"):
            results = asyncio.run(_fetcher(handler, attempts=2).fetch_all(
                [_script("https://h/x", "x.sh")], str(tmp_path), {},
            ))

        assert results[0].ok is False
        assert "gave up after 2 attempts" in results[0].error
        assert "Failed to download x.sh" in caplog.text
        assert list(tmp_path.iterdir()) == []

    def test_destination_escape_refused(self, tmp_path):
        def handler(request):
            raise AssertionError("must not be requested")

        volume = tmp_path / "vol"
        volume.mkdir()
        results = asyncio.run(_fetcher(handler).fetch_all(
            [_script("https://h/x", "../../evil.sh")], str(volume), {},
        ))
        assert results[0].ok is False
        assert not (tmp_path / "evil.sh").exists()

    def test_redirect_loop_fails_script_not_batch(self, tmp_path):
        """
        GIVEN a first script whose URI redirects to itself forever
        WHEN the batch is fetched
        THEN that script fails without retries and the next one still lands
        """
        calls = []

        def handler(request):
            calls.append(request.url.path)
            if request.url.path == "/loop":
                return httpx.Response(302, headers={"Location": "https://h/loop"})
            return httpx.Response(200, content=b"ok")

        results = asyncio.run(_fetcher(handler).fetch_all(
            [_script("https://h/loop", "loop.sh"), _script("https://h/good", "good.sh")],
            str(tmp_path), {},
        ))

        assert [r.ok for r in results] == [False, True]
        assert "TooManyRedirects" in results[0].error
        assert calls.count("/good") == 1
        assert (tmp_path / "good.sh").read_bytes() == b"ok"
        assert not (tmp_path / "loop.sh").exists()
