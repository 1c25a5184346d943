"""Tests against a live KATCP server.

Skipped unless a host is configured::

    pytest tests/test_live.py --host roach2 -v

Only requests every KATCP server implements are used, so these are safe
to run against production hardware.
"""


class TestLiveServer:

    def test_watchdog(self, live_client):
        resp = live_client.request("watchdog")
        assert resp.ok()
        assert resp.reqname() == "watchdog"

    def test_help_is_sorted(self, live_client):
        resp = live_client.help()
        assert resp.ok()
        informs = resp.informs()
        assert informs, "?help returned no informs"
        assert informs == sorted(informs)
        assert all(line[0] == "#help" for line in informs)

    def test_help_for_one_request(self, live_client):
        resp = live_client.help("watchdog")
        assert resp.ok()
        assert resp.grep("^watchdog$")

    def test_unknown_request_is_not_ok(self, live_client):
        resp = live_client.request("no_such_request_xyz")
        assert resp.complete()
        assert not resp.ok()

    def test_repeated_requests(self, live_client):
        for _ in range(5):
            assert live_client.request("watchdog").ok()
