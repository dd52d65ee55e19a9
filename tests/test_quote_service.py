import threading
import unittest
from datetime import datetime, timezone

import requests

from stockpulse.errors import (
    AuthError,
    FeedConnectionError,
    FetchError,
    ServiceDisposedError,
    SnapshotUnavailableError,
)
from stockpulse.integrations.yahoo_ws import FeedState, YahooLiveFeed
from stockpulse.schemas.quote import PriceSnapshot, PriceUpdateFrame, QuoteRecord
from stockpulse.schemas.session import Session
from stockpulse.services.quote_service import QuoteService, frame_timestamp, merge_price_update


def _record(symbol="AAPL", current=100.0, day_high=110.0, day_low=95.0, previous_close=98.0):
    return QuoteRecord(
        type="EQUITY",
        symbol=symbol,
        name="Apple Inc.",
        timezone="America/New_York",
        currency="USD",
        exchange="NasdaqGS",
        sector="Technology",
        price=PriceSnapshot(
            current=current,
            day_high=day_high,
            day_low=day_low,
            previous_close=previous_close,
            day_volume=1000,
        ),
    )


class StubBootstrapper:
    def __init__(self, failures=None) -> None:
        self.failures = list(failures or [])
        self.calls = 0

    def acquire(self) -> Session:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return Session(session_token=f"cookie-{self.calls}", crumb=f"crumb-{self.calls}")


class ScriptedSnapshotClient:
    """Plays back results/exceptions in order; records the session used per call."""

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.sessions = []

    def fetch_snapshot(self, session, symbol):
        self.sessions.append(session)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeLiveFeed:
    def __init__(self) -> None:
        self.subscriptions = []
        self.disposed = 0
        self.on_state_change = None

    def set_on_state_change(self, callback):
        self.on_state_change = callback

    def subscribe(self, symbol, on_update, *, background=True):
        self.subscriptions.append(symbol)
        self.on_update = on_update

    def dispose(self):
        self.disposed += 1

    def metrics(self):
        return {"feed_state": "SUBSCRIBED" if self.subscriptions else "DISCONNECTED"}


def _service(snapshot_client, bootstrapper=None, feed=None, **kwargs):
    return QuoteService(
        bootstrapper=bootstrapper or StubBootstrapper(),
        snapshot_client=snapshot_client,
        live_feed=feed or FakeLiveFeed(),
        **kwargs,
    )


class TestMergePriceUpdate(unittest.TestCase):
    def test_zero_price_keeps_last_known_value(self):
        price = PriceSnapshot(current=100.0, day_high=110.0)

        merged = merge_price_update(price, PriceUpdateFrame(id="AAPL", price=0.0))

        self.assertEqual(merged.current, 100.0)

    def test_non_zero_day_high_overwrites(self):
        price = PriceSnapshot(current=100.0, day_high=110.0)

        merged = merge_price_update(price, PriceUpdateFrame(id="AAPL", day_high=115.0))

        self.assertEqual(merged.day_high, 115.0)
        self.assertEqual(merged.current, 100.0)

    def test_all_present_fields_overwrite(self):
        price = PriceSnapshot(current=100.0, day_high=110.0, day_low=90.0, previous_close=99.0, day_volume=10)

        merged = merge_price_update(
            price,
            PriceUpdateFrame(
                id="AAPL",
                price=101.0,
                day_high=111.0,
                day_low=89.0,
                previous_close=98.0,
                day_volume=20,
                time=1700000000000,
            ),
        )

        self.assertEqual(merged.current, 101.0)
        self.assertEqual(merged.day_high, 111.0)
        self.assertEqual(merged.day_low, 89.0)
        self.assertEqual(merged.previous_close, 98.0)
        self.assertEqual(merged.day_volume, 20)
        self.assertEqual(merged.updated_at, datetime.fromtimestamp(1700000000, tz=timezone.utc))

    def test_merge_returns_new_snapshot(self):
        price = PriceSnapshot(current=100.0)

        merged = merge_price_update(price, PriceUpdateFrame(id="AAPL", price=105.0))

        self.assertIsNot(merged, price)
        self.assertEqual(price.current, 100.0)

    def test_frame_timestamp_accepts_milliseconds_and_seconds(self):
        expected = datetime.fromtimestamp(1700000000, tz=timezone.utc)

        self.assertEqual(frame_timestamp(1700000000000), expected)
        self.assertEqual(frame_timestamp(1700000000), expected)
        self.assertIsNone(frame_timestamp(0))


class TestQuoteService(unittest.TestCase):
    def test_get_snapshot_bootstraps_once_and_starts_feed(self):
        bootstrapper = StubBootstrapper()
        feed = FakeLiveFeed()
        client = ScriptedSnapshotClient(_record(), _record())
        service = _service(client, bootstrapper=bootstrapper, feed=feed)

        first = service.get_snapshot(" aapl ")
        service.get_snapshot("AAPL")

        self.assertEqual(first.symbol, "AAPL")
        self.assertEqual(bootstrapper.calls, 1)
        self.assertEqual(feed.subscriptions, ["AAPL", "AAPL"])
        self.assertEqual(service.current.symbol, "AAPL")

    def test_not_found_returns_none_without_touching_feed(self):
        feed = FakeLiveFeed()
        service = _service(ScriptedSnapshotClient(None), feed=feed)

        self.assertIsNone(service.get_snapshot("NOPE"))
        self.assertEqual(feed.subscriptions, [])
        self.assertIsNone(service.current)
        self.assertEqual(service.not_found, 1)

    def test_empty_symbol_is_rejected(self):
        service = _service(ScriptedSnapshotClient())

        with self.assertRaises(ValueError):
            service.get_snapshot("   ")

    def test_fetch_error_is_not_retried(self):
        client = ScriptedSnapshotClient(FetchError("unexpected response format"), _record())
        service = _service(client)

        with self.assertRaises(FetchError) as ctx:
            service.get_snapshot("AAPL")

        self.assertNotIsInstance(ctx.exception, SnapshotUnavailableError)
        self.assertEqual(len(client.sessions), 1)

    def test_auth_error_rebootstraps_session_and_retries(self):
        bootstrapper = StubBootstrapper()
        client = ScriptedSnapshotClient(AuthError("Invalid Crumb"), _record())
        service = _service(client, bootstrapper=bootstrapper)

        record = service.get_snapshot("AAPL")

        self.assertEqual(record.symbol, "AAPL")
        self.assertEqual(bootstrapper.calls, 2)
        self.assertEqual([s.crumb for s in client.sessions], ["crumb-1", "crumb-2"])
        self.assertEqual(service.retries, 1)

    def test_network_error_retries_with_current_session(self):
        bootstrapper = StubBootstrapper()
        client = ScriptedSnapshotClient(requests.ConnectionError("reset"), requests.Timeout("slow"), _record())
        service = _service(client, bootstrapper=bootstrapper)

        record = service.get_snapshot("AAPL")

        self.assertIsNotNone(record)
        self.assertEqual(bootstrapper.calls, 1)
        self.assertEqual(len(client.sessions), 3)

    def test_bootstrap_failure_counts_as_an_attempt(self):
        bootstrapper = StubBootstrapper(failures=[AuthError("no cookie"), requests.ConnectionError("down")])
        client = ScriptedSnapshotClient(_record())
        service = _service(client, bootstrapper=bootstrapper)

        self.assertIsNotNone(service.get_snapshot("AAPL"))
        self.assertEqual(bootstrapper.calls, 3)

    def test_retry_exhaustion_raises_single_consolidated_error(self):
        sleeps = []
        client = ScriptedSnapshotClient(*[requests.ConnectionError("down")] * 3)
        service = _service(client, retry_delay_sec=0.25, sleep_fn=sleeps.append)

        with self.assertRaises(SnapshotUnavailableError) as ctx:
            service.get_snapshot("AAPL")

        self.assertEqual(len(client.sessions), 3)
        self.assertIsInstance(ctx.exception.__cause__, requests.ConnectionError)
        # fixed delay between attempts only
        self.assertEqual(sleeps, [0.25, 0.25])

    def test_max_attempts_bound_is_configurable(self):
        client = ScriptedSnapshotClient(*[AuthError("nope")] * 5)
        service = _service(client, max_attempts=5)

        with self.assertRaises(SnapshotUnavailableError):
            service.get_snapshot("AAPL")
        self.assertEqual(len(client.sessions), 5)

        with self.assertRaises(ValueError):
            _service(client, max_attempts=0)

    def test_frames_are_merged_and_listeners_notified(self):
        feed = FakeLiveFeed()
        service = _service(ScriptedSnapshotClient(_record(current=100.0, day_high=110.0)), feed=feed)
        seen = []
        service.on_update(seen.append)

        service.get_snapshot("AAPL")
        before = service.current
        feed.on_update(PriceUpdateFrame(id="AAPL", price=0.0, day_high=115.0, time=1700000000000))

        self.assertEqual(service.current.price.current, 100.0)
        self.assertEqual(service.current.price.day_high, 115.0)
        self.assertEqual(service.current.price.updated_at, datetime.fromtimestamp(1700000000, tz=timezone.utc))
        self.assertEqual(before.price.day_high, 110.0)
        self.assertEqual(len(seen), 2)
        self.assertIs(seen[-1], service.current)
        self.assertEqual(service.merges, 1)

    def test_frames_for_other_symbols_are_ignored(self):
        feed = FakeLiveFeed()
        service = _service(ScriptedSnapshotClient(_record()), feed=feed)
        service.get_snapshot("AAPL")

        feed.on_update(PriceUpdateFrame(id="MSFT", price=400.0))

        self.assertEqual(service.current.price.current, 100.0)
        self.assertEqual(service.merges, 0)

    def test_fresh_snapshot_replaces_record_wholesale(self):
        feed = FakeLiveFeed()
        service = _service(ScriptedSnapshotClient(_record("AAPL"), _record("MSFT", current=400.0)), feed=feed)

        service.get_snapshot("AAPL")
        service.get_snapshot("MSFT")

        self.assertEqual(service.current.symbol, "MSFT")
        self.assertEqual(service.current.price.current, 400.0)
        self.assertEqual(feed.subscriptions, ["AAPL", "MSFT"])

    def test_unsubscribe_stops_notifications(self):
        feed = FakeLiveFeed()
        service = _service(ScriptedSnapshotClient(_record()), feed=feed)
        seen = []
        unsubscribe = service.on_update(seen.append)
        unsubscribe()

        service.get_snapshot("AAPL")

        self.assertEqual(seen, [])

    def test_feed_disconnect_with_error_reaches_error_listeners(self):
        feed = FakeLiveFeed()
        service = _service(ScriptedSnapshotClient(), feed=feed)
        errors = []
        service.on_feed_error(errors.append)

        feed.on_state_change(state=FeedState.DISCONNECTED, symbol="AAPL", last_error="peer reset")
        feed.on_state_change(state=FeedState.DISCONNECTED, symbol="AAPL", last_error=None)
        feed.on_state_change(state=FeedState.SUBSCRIBED, symbol="AAPL", last_error=None)

        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], FeedConnectionError)
        self.assertIn("peer reset", str(errors[0]))

    def test_server_close_reaches_error_listeners(self):
        class ServerCloseApp:
            def __init__(self, url, *, header=None, on_open=None, on_message=None, on_error=None, on_close=None):
                self.on_open = on_open
                self.on_close = on_close

            def send(self, payload):
                pass

            def close(self):
                pass

            def run_forever(self):
                self.on_open(self)
                self.on_close(self, 1006, "server went away")

        feed = YahooLiveFeed(websocket_app_factory=ServerCloseApp)
        service = _service(ScriptedSnapshotClient(_record()), feed=feed)
        errors = []
        dropped = threading.Event()
        service.on_feed_error(lambda exc: (errors.append(exc), dropped.set()))

        service.get_snapshot("AAPL")

        self.assertTrue(dropped.wait(1.0))
        self.assertEqual(len(errors), 1)
        self.assertIn("code=1006", str(errors[0]))

    def test_dispose_closes_feed_once_and_blocks_further_use(self):
        feed = FakeLiveFeed()
        service = _service(ScriptedSnapshotClient(_record()), feed=feed)
        service.get_snapshot("AAPL")

        service.dispose()
        service.dispose()

        self.assertEqual(feed.disposed, 1)
        self.assertFalse(service.metrics()["session_active"])
        with self.assertRaises(ServiceDisposedError):
            service.get_snapshot("AAPL")

    def test_result_arriving_after_dispose_is_discarded(self):
        feed = FakeLiveFeed()
        service = None

        class DisposingClient:
            def fetch_snapshot(self, session, symbol):
                service.dispose()
                return _record()

        service = _service(DisposingClient(), feed=feed)

        self.assertIsNone(service.get_snapshot("AAPL"))
        self.assertIsNone(service.current)
        self.assertEqual(feed.subscriptions, [])

    def test_dispose_from_update_listener_keeps_feed_closed(self):
        feed = FakeLiveFeed()
        service = _service(ScriptedSnapshotClient(_record()), feed=feed)
        service.on_update(lambda record: service.dispose())

        self.assertIsNone(service.get_snapshot("AAPL"))
        self.assertEqual(feed.subscriptions, [])
        self.assertEqual(feed.disposed, 1)
        self.assertTrue(service.disposed)

    def test_merge_after_dispose_is_ignored(self):
        feed = FakeLiveFeed()
        service = _service(ScriptedSnapshotClient(_record()), feed=feed)
        service.get_snapshot("AAPL")
        service.dispose()

        feed.on_update(PriceUpdateFrame(id="AAPL", price=120.0))

        self.assertEqual(service.current.price.current, 100.0)

    def test_metrics_include_feed_metrics(self):
        service = _service(ScriptedSnapshotClient(_record()))
        service.get_snapshot("AAPL")

        metrics = service.metrics()

        self.assertEqual(metrics["tracked_symbol"], "AAPL")
        self.assertTrue(metrics["session_active"])
        self.assertEqual(metrics["bootstraps"], 1)
        self.assertEqual(metrics["feed_state"], "SUBSCRIBED")


if __name__ == "__main__":
    unittest.main()
