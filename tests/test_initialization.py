import json
import os
import tempfile
import threading
import unittest
from typing import List, Tuple
from unittest.mock import patch

import signage
from signage import (
    CycleScheduler,
    DigitalSignageInitializer,
    StatusPresenter,
    WebviewAsset,
    initialize_digital_signage,
    run_playlists,
)

from fakes import (
    FakeRequests,
    FakeResponse,
    TimerRecorder,
    asset_payload,
    iso_from_ts,
    manifest_payload,
    playlist_payload,
    utc_ts,
)

API_URL = "https://example.test/signage-data"
IMAGE_URL = "https://cdn.test/media/welcome.jpg"
VIDEO_URL = "https://cdn.test/media/promo.mp4"


def two_asset_manifest() -> dict:
    return manifest_payload(
        [
            playlist_payload(
                "p1",
                "Lobby",
                [
                    asset_payload("a2", "Promo", VIDEO_URL, "video", "2", "10"),
                    asset_payload("a1", "Welcome", IMAGE_URL, "image", "1", "5"),
                ],
                is_default=True,
            )
        ]
    )


class InitializationTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.assets_dir = os.path.join(self._tmp.name, "assets")
        self.cfg = {
            "api_url": API_URL,
            "assets_dir": self.assets_dir,
            "download_delay_sec": 0,
            "max_retries": 2,
        }
        self.sleeps: List[float] = []

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def healthy_requests(self) -> FakeRequests:
        return (
            FakeRequests()
            .route("GET", API_URL, FakeResponse(json_data=two_asset_manifest()))
            .route("GET", IMAGE_URL, FakeResponse(body=b"image"))
            .route("GET", VIDEO_URL, FakeResponse(body=b"video"))
        )

    def test_end_to_end_cycle_presents_in_order_and_wraps(self) -> None:
        with patch.object(signage, "requests", self.healthy_requests()):
            result = initialize_digital_signage(self.cfg, sleep=self.sleeps.append)

        self.assertTrue(result.success, result.error)
        cycle = result.default_playlist
        self.assertEqual(cycle.total_cycle_duration, 15)
        self.assertEqual(os.path.basename(cycle.assets[0].display_path), "a1_welcome.jpg")

        timers = TimerRecorder()
        shown: List[Tuple[str, int]] = []

        def record(asset: WebviewAsset, duration: int) -> None:
            shown.append((asset.filetype, duration))

        scheduler = CycleScheduler(cycle, record, timer_factory=timers, clock=lambda: utc_ts(2026, 2, 8, 12, 0, 0))
        scheduler.start()
        timers.advance_timer().fire()
        timers.advance_timer().fire()

        self.assertEqual(shown, [("image", 5), ("video", 10), ("image", 5)])

    def test_stats_and_summary_file(self) -> None:
        with patch.object(signage, "requests", self.healthy_requests()):
            result = initialize_digital_signage(self.cfg, sleep=self.sleeps.append)

        self.assertEqual(result.stats.total_assets, 2)
        self.assertEqual(result.stats.successful_downloads, 2)
        self.assertEqual(result.stats.failed_downloads, 0)
        self.assertEqual(result.stats.streams_kept, 0)
        self.assertEqual(result.stats.total_playlists, 1)
        self.assertGreaterEqual(result.stats.initialization_time_ms, 0)
        self.assertTrue(os.path.exists(os.path.join(self.assets_dir, "webview-manifest.json")))

    def test_http_500_is_reported_as_failure(self) -> None:
        fake = FakeRequests().route(
            "GET", API_URL, FakeResponse(status_code=500, reason="Internal Server Error")
        )
        with patch.object(signage, "requests", fake):
            result = initialize_digital_signage(self.cfg, sleep=self.sleeps.append)

        self.assertFalse(result.success)
        self.assertIn("500", result.error)
        self.assertTrue(result.error.startswith("API fetch failed"))

    def test_schema_failure_aborts_initialization(self) -> None:
        data = two_asset_manifest()
        data["playlists"][0]["assets"][0]["name"] = ""
        fake = FakeRequests().route("GET", API_URL, FakeResponse(json_data=data))
        with patch.object(signage, "requests", fake):
            result = initialize_digital_signage(self.cfg, sleep=self.sleeps.append)

        self.assertFalse(result.success)
        self.assertIn("Invalid API response format", result.error)
        self.assertEqual(fake.count("GET", IMAGE_URL), 0)

    def test_all_assets_failing_is_rejected_by_validation(self) -> None:
        fake = (
            FakeRequests()
            .route("GET", API_URL, FakeResponse(json_data=two_asset_manifest()))
            .route("GET", IMAGE_URL, FakeResponse(status_code=404, reason="Not Found"))
            .route("GET", VIDEO_URL, FakeResponse(status_code=404, reason="Not Found"))
        )
        with patch.object(signage, "requests", fake):
            initializer = DigitalSignageInitializer(self.cfg, sleep=self.sleeps.append)
            raw = initializer.initialize()
            result = initialize_digital_signage(self.cfg, sleep=self.sleeps.append)

        self.assertTrue(raw.success)
        self.assertEqual(raw.playlist_cycles, [])
        self.assertFalse(initializer.validate_result(raw))
        self.assertFalse(result.success)
        self.assertIn("No playlists available", result.error)

    def test_progress_stages_and_clearing(self) -> None:
        os.makedirs(os.path.join(self.assets_dir, "old_dir"))
        with open(os.path.join(self.assets_dir, "stale.jpg"), "wb") as fh:
            fh.write(b"x")
        events = []
        with patch.object(signage, "requests", self.healthy_requests()):
            result = initialize_digital_signage(self.cfg, on_progress=events.append, sleep=self.sleeps.append)

        self.assertTrue(result.success)
        self.assertFalse(os.path.exists(os.path.join(self.assets_dir, "stale.jpg")))
        self.assertFalse(os.path.exists(os.path.join(self.assets_dir, "old_dir")))
        stages = []
        for event in events:
            if not stages or stages[-1] != event.stage:
                stages.append(event.stage)
        self.assertEqual(stages, ["clearing", "device-info", "api-fetch", "downloading", "complete"])
        clearing = [e for e in events if e.stage == "clearing" and e.total]
        self.assertEqual(clearing[-1].current, 2)
        self.assertEqual(events[-1].progress, 100)

    def test_device_probe_failure_is_swallowed(self) -> None:
        def broken_probe():
            raise RuntimeError("no device info")

        with patch.object(signage, "requests", self.healthy_requests()):
            initializer = DigitalSignageInitializer(
                self.cfg,
                sleep=self.sleeps.append,
                device_name_probe=broken_probe,
            )
            result = initializer.initialize()

        self.assertTrue(result.success)
        self.assertIsNone(result.device_name)

    def test_default_playlist_falls_back_to_first(self) -> None:
        data = two_asset_manifest()
        data["playlists"][0]["is_default"] = False
        fake = self.healthy_requests().route("GET", API_URL, FakeResponse(json_data=data))
        with patch.object(signage, "requests", fake):
            result = initialize_digital_signage(self.cfg, sleep=self.sleeps.append)

        self.assertTrue(result.success)
        self.assertEqual(result.default_playlist.playlist_id, "p1")


class RunnerTests(unittest.TestCase):
    def test_presenter_writes_status_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            status_path = os.path.join(tmpdir, "status", "now.json")
            presenter = StatusPresenter({"status_file": status_path})
            asset = WebviewAsset("a1", "Welcome", "image", 1, 5, "/assets/a1.jpg", False, "https://cdn.test/a1.jpg")

            presenter.show(asset, 5)

            with open(status_path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        self.assertEqual(data["current_asset"]["id"], "a1")
        self.assertEqual(data["duration_sec"], 5)

    def test_run_playlists_exits_when_nothing_will_play(self) -> None:
        presenter = StatusPresenter({})
        code = run_playlists({}, [], presenter, threading.Event())

        self.assertEqual(code, 2)
        self.assertTrue(presenter.halted.is_set())

    def test_run_playlists_returns_when_already_stopped(self) -> None:
        stop_event = threading.Event()
        stop_event.set()
        self.assertEqual(run_playlists({}, [], StatusPresenter({}), stop_event), 0)

    def test_ended_playlist_is_not_scheduled(self) -> None:
        data = two_asset_manifest()
        data["playlists"][0]["enddate"] = iso_from_ts(utc_ts(2020, 1, 1, 0, 0, 0))
        cycles = signage.prepare_playlists_for_cycling(
            signage.parse_manifest(data),
            [
                signage.FetchResult(asset=asset, success=True, local_path="/assets/x")
                for asset in signage.parse_manifest(data).all_assets()
            ],
        )
        presenter = StatusPresenter({})
        self.assertEqual(run_playlists({}, cycles, presenter, threading.Event()), 2)


if __name__ == "__main__":
    unittest.main()
