"""Unit tests for the export consumer.

Tests job settlement (ack, retry, dead-letter, abandon), the graceful
shutdown window and the connect/reconnect state machine with mocked
broker, catalog and mailer.

Author: OpenMusic
Version: 1.0.0
"""

from __future__ import annotations

import smtplib
import threading
import time
from unittest.mock import MagicMock, patch

import pytest
from pika.exceptions import ChannelClosedByBroker, StreamLostError

from openmusic_export.clients.smtp import Mailer
from openmusic_export.core.backoff import ExponentialBackoff
from openmusic_export.core.exceptions import (
    ExportConfigError,
    NotFoundError,
    PermanentDeliveryError,
    QueueUnavailableError,
    TransientIOError,
)
from openmusic_export.worker.consumer import ConsumerState, ExportConsumer, JobOutcome


@pytest.fixture
def worker_reader(sample_playlist) -> MagicMock:
    reader = MagicMock()
    reader.fetch.return_value = sample_playlist
    return reader


@pytest.fixture
def worker_mailer() -> MagicMock:
    mailer = MagicMock()
    mailer.send_export.return_value = "<id@openmusic.test>"
    return mailer


@pytest.fixture
def connection_factory(mock_broker_connection) -> MagicMock:
    return MagicMock(return_value=mock_broker_connection)


@pytest.fixture
def consumer(mock_config, worker_reader, worker_mailer, connection_factory, fake_clock):
    """Consumer wired to mocks with a manual clock."""
    return ExportConsumer(
        mock_config,
        reader=worker_reader,
        mailer=worker_mailer,
        connection_factory=connection_factory,
        stop_event=threading.Event(),
        clock=fake_clock,
    )


def _published(channel: MagicMock) -> dict:
    return channel.basic_publish.call_args.kwargs


class TestJobSettlement:
    """Tests for handle_delivery() outcomes."""

    def test_success_acks_once(self, consumer, mock_channel, make_delivery, worker_mailer):
        """Test a delivered export is acknowledged exactly once."""
        outcome = consumer.handle_delivery(mock_channel, *make_delivery())

        assert outcome is JobOutcome.ACKED
        mock_channel.basic_ack.assert_called_once_with(delivery_tag=1)
        mock_channel.basic_nack.assert_not_called()
        mock_channel.basic_publish.assert_not_called()
        assert consumer.stats.sent_count == 1
        assert consumer.state is ConsumerState.IDLE

    def test_sends_snapshot_as_attachment(
        self, consumer, mock_channel, make_delivery, worker_reader, worker_mailer, sample_playlist
    ):
        """Test the fetched snapshot is mailed to the job's recipient."""
        consumer.handle_delivery(mock_channel, *make_delivery())

        worker_reader.fetch.assert_called_once_with("playlist-1")
        worker_mailer.send_export.assert_called_once_with(
            "user@example.com", sample_playlist.to_export_json()
        )

    def test_missing_playlist_dead_lettered_first_time(
        self, consumer, mock_channel, make_delivery, worker_reader, worker_mailer
    ):
        """Test a deleted playlist is dead-lettered without sending or retrying."""
        worker_reader.fetch.side_effect = NotFoundError("Playlist not found", entity_id="playlist-1")

        outcome = consumer.handle_delivery(mock_channel, *make_delivery())

        assert outcome is JobOutcome.DEAD_LETTERED
        mock_channel.basic_nack.assert_called_once_with(delivery_tag=1, requeue=False)
        mock_channel.basic_publish.assert_not_called()
        worker_mailer.send_export.assert_not_called()

    def test_transient_failure_republished_with_delay(
        self, consumer, mock_channel, make_delivery, worker_mailer
    ):
        """Test a transient failure publishes a delayed copy then acks the original."""
        worker_mailer.send_export.side_effect = TransientIOError("timed out", reconnect=True)
        method, properties, body = make_delivery()

        outcome = consumer.handle_delivery(mock_channel, method, properties, body)

        assert outcome is JobOutcome.RETRIED
        published = _published(mock_channel)
        assert published["exchange"] == ""
        assert published["routing_key"] == "export:playlist.retry.10000"
        assert published["body"] == body
        assert published["properties"].headers == {"x-retry-count": 1}
        assert published["properties"].message_id == "msg-1"
        assert published["properties"].delivery_mode == 2
        mock_channel.basic_ack.assert_called_once_with(delivery_tag=1)
        mock_channel.basic_nack.assert_not_called()

    def test_retry_without_delay_goes_to_main_queue(
        self, mock_config, worker_reader, worker_mailer, mock_channel, make_delivery
    ):
        """Test a zero retry delay re-publishes straight to the export queue."""
        config = mock_config.model_copy(update={"EXPORT_RETRY_DELAY_SECONDS": 0})
        consumer = ExportConsumer(config, reader=worker_reader, mailer=worker_mailer)
        worker_mailer.send_export.side_effect = TransientIOError("timed out")

        consumer.handle_delivery(mock_channel, *make_delivery())

        published = _published(mock_channel)
        assert published["routing_key"] == "export:playlist"

    def test_retry_budget_exhausted(self, consumer, mock_channel, make_delivery, worker_mailer):
        """Test a job at the retry limit is dead-lettered."""
        worker_mailer.send_export.side_effect = TransientIOError("timed out")

        outcome = consumer.handle_delivery(mock_channel, *make_delivery(retry_count=2))

        assert outcome is JobOutcome.DEAD_LETTERED
        mock_channel.basic_publish.assert_not_called()
        mock_channel.basic_nack.assert_called_once_with(delivery_tag=1, requeue=False)

    def test_retry_sequence_then_dead_letter(
        self, consumer, mock_channel, make_delivery, worker_mailer
    ):
        """Test max_retries + 1 attempts in total, with doubling delays."""
        worker_mailer.send_export.side_effect = TransientIOError("timed out")

        first = consumer.handle_delivery(mock_channel, *make_delivery())
        first_route = _published(mock_channel)["routing_key"]
        first_props = _published(mock_channel)["properties"]
        second = consumer.handle_delivery(
            mock_channel, *make_delivery(retry_count=first_props.headers["x-retry-count"])
        )
        second_route = _published(mock_channel)["routing_key"]
        second_props = _published(mock_channel)["properties"]
        third = consumer.handle_delivery(
            mock_channel, *make_delivery(retry_count=second_props.headers["x-retry-count"])
        )

        assert [first, second, third] == [
            JobOutcome.RETRIED,
            JobOutcome.RETRIED,
            JobOutcome.DEAD_LETTERED,
        ]
        assert (first_route, second_route) == (
            "export:playlist.retry.10000",
            "export:playlist.retry.20000",
        )
        assert worker_mailer.send_export.call_count == 3
        assert consumer.stats.retried_count == 2
        assert consumer.stats.dead_lettered_count == 1

    def test_invalid_email_dead_lettered_without_fetch(
        self, consumer, mock_channel, make_delivery, worker_reader
    ):
        """Test bad recipient addresses are rejected before touching the catalog."""
        delivery = make_delivery({"playlistId": "playlist-1", "targetEmail": "not-an-email"})

        outcome = consumer.handle_delivery(mock_channel, *delivery)

        assert outcome is JobOutcome.DEAD_LETTERED
        worker_reader.fetch.assert_not_called()

    @pytest.mark.parametrize(
        "payload,retry_count",
        [
            (b"{not json", None),
            (b"\xff\xfe", None),
            (b'["playlist-1"]', None),
            ({"playlistId": "playlist-1"}, None),
            (None, "abc"),
        ],
    )
    def test_malformed_message_dead_lettered(
        self, consumer, mock_channel, make_delivery, payload, retry_count
    ):
        """Test undecodable bodies and headers are dead-lettered."""
        outcome = consumer.handle_delivery(
            mock_channel, *make_delivery(payload, retry_count=retry_count)
        )

        assert outcome is JobOutcome.DEAD_LETTERED
        mock_channel.basic_nack.assert_called_once_with(delivery_tag=1, requeue=False)

    def test_permanent_delivery_dead_lettered(
        self, consumer, mock_channel, make_delivery, worker_mailer
    ):
        """Test refused recipients are dead-lettered without retry."""
        worker_mailer.send_export.side_effect = PermanentDeliveryError(
            "Recipient refused", smtp_code=550
        )

        outcome = consumer.handle_delivery(mock_channel, *make_delivery())

        assert outcome is JobOutcome.DEAD_LETTERED
        mock_channel.basic_publish.assert_not_called()

    def test_unexpected_error_retried(self, consumer, mock_channel, make_delivery, worker_mailer):
        """Test unclassified exceptions are treated as transient."""
        worker_mailer.send_export.side_effect = RuntimeError("boom")

        outcome = consumer.handle_delivery(mock_channel, *make_delivery())

        assert outcome is JobOutcome.RETRIED

    def test_message_id_falls_back_to_delivery_tag(
        self, consumer, mock_channel, make_delivery, worker_mailer
    ):
        """Test retries of messages without an id get a tag-based one."""
        worker_mailer.send_export.side_effect = TransientIOError("timed out")

        consumer.handle_delivery(mock_channel, *make_delivery(message_id=None, delivery_tag=7))

        assert _published(mock_channel)["properties"].message_id == "tag-7"

    def test_broker_error_on_ack_abandons(self, consumer, mock_channel, make_delivery):
        """Test a failed ack leaves the job unsettled and disconnects."""
        mock_channel.basic_ack.side_effect = StreamLostError("connection lost")

        outcome = consumer.handle_delivery(mock_channel, *make_delivery())

        assert outcome is JobOutcome.ABANDONED
        assert consumer.state is ConsumerState.DISCONNECTED
        assert consumer.stats.abandoned_count == 1
        assert consumer.stats.sent_count == 0

    def test_broker_error_on_retry_publish_abandons(
        self, consumer, mock_channel, make_delivery, worker_mailer
    ):
        """Test the original is not acked when its retry copy cannot be published."""
        worker_mailer.send_export.side_effect = TransientIOError("timed out")
        mock_channel.basic_publish.side_effect = StreamLostError("connection lost")

        outcome = consumer.handle_delivery(mock_channel, *make_delivery())

        assert outcome is JobOutcome.ABANDONED
        mock_channel.basic_ack.assert_not_called()


class TestGracefulShutdown:
    """Tests for the shutdown grace period."""

    def test_send_outlasting_grace_is_abandoned(
        self, consumer, mock_channel, make_delivery, worker_mailer, fake_clock
    ):
        """Test the consumer stops waiting for a send once the grace period is over."""
        release = threading.Event()

        def hanging_send(*args):
            consumer.request_shutdown()
            fake_clock.advance(6)
            release.wait(5)
            return "<id@openmusic.test>"

        worker_mailer.send_export.side_effect = hanging_send

        start = time.monotonic()
        try:
            outcome = consumer.handle_delivery(mock_channel, *make_delivery())
        finally:
            release.set()

        assert time.monotonic() - start < 2
        assert outcome is JobOutcome.ABANDONED
        mock_channel.basic_ack.assert_not_called()
        mock_channel.basic_nack.assert_not_called()

    def test_send_within_grace_is_acked(
        self, consumer, mock_channel, make_delivery, worker_mailer, fake_clock
    ):
        """Test an in-flight job finishing inside the grace period is acked."""

        def send(*args):
            consumer.request_shutdown()
            fake_clock.advance(1)
            return "<id@openmusic.test>"

        worker_mailer.send_export.side_effect = send

        outcome = consumer.handle_delivery(mock_channel, *make_delivery())

        assert outcome is JobOutcome.ACKED
        mock_channel.basic_ack.assert_called_once_with(delivery_tag=1)

    def test_confirmed_send_acked_after_grace(
        self, consumer, mock_config, mock_channel, make_delivery, worker_mailer, fake_clock
    ):
        """Test a send the server accepted is acked even past the grace period."""
        mock_config.CONSUMER_POLL_SECONDS = 5

        def late_send(*args):
            consumer.request_shutdown()
            fake_clock.advance(6)
            return "<id@openmusic.test>"

        worker_mailer.send_export.side_effect = late_send

        outcome = consumer.handle_delivery(mock_channel, *make_delivery())

        assert outcome is JobOutcome.ACKED
        mock_channel.basic_ack.assert_called_once_with(delivery_tag=1)

    def test_failure_during_shutdown_is_retried(
        self, consumer, mock_channel, make_delivery, worker_mailer, fake_clock
    ):
        """Test a send failing during the grace period is still settled."""

        def failing_send(*args):
            consumer.request_shutdown()
            fake_clock.advance(1)
            raise TransientIOError("timed out")

        worker_mailer.send_export.side_effect = failing_send

        outcome = consumer.handle_delivery(mock_channel, *make_delivery())

        assert outcome is JobOutcome.RETRIED
        mock_channel.basic_ack.assert_called_once_with(delivery_tag=1)

    def test_shutdown_cuts_mailer_backoff_short(
        self,
        mock_config,
        mock_smtp_config,
        worker_reader,
        connection_factory,
        mock_channel,
        make_delivery,
    ):
        """Test a shutdown during SMTP backoff ends the job without waiting it out."""
        stop_event = threading.Event()
        mailer = Mailer(
            smtp_config=mock_smtp_config,
            backoff=ExponentialBackoff(attempts=3, base_seconds=1),
            stop_event=stop_event,
        )
        consumer = ExportConsumer(
            mock_config,
            reader=worker_reader,
            mailer=mailer,
            connection_factory=connection_factory,
            stop_event=stop_event,
        )
        timer = threading.Timer(0.05, consumer.request_shutdown)

        def dropped_send(*args, **kwargs):
            timer.start()
            raise smtplib.SMTPServerDisconnected("gone")

        smtp = MagicMock()
        smtp.send_message.side_effect = dropped_send

        start = time.monotonic()
        with patch("openmusic_export.clients.smtp.smtplib.SMTP", return_value=smtp):
            outcome = consumer.handle_delivery(mock_channel, *make_delivery())
        timer.join()

        assert time.monotonic() - start < 0.9
        assert outcome is JobOutcome.RETRIED
        smtp.send_message.assert_called_once()

    def test_shutdown_before_processing(
        self, consumer, mock_channel, make_delivery, worker_reader
    ):
        """Test no new job starts once shutdown was requested."""
        consumer.request_shutdown()

        outcome = consumer.handle_delivery(mock_channel, *make_delivery())

        assert outcome is JobOutcome.ABANDONED
        worker_reader.fetch.assert_not_called()
        mock_channel.basic_ack.assert_not_called()


class TestLongRunningSend:
    """Tests for servicing the broker connection during a slow send."""

    def test_heartbeats_serviced_while_sending(
        self, consumer, mock_channel, make_delivery, worker_mailer
    ):
        """Test data events are processed until the send completes."""
        release = threading.Event()
        polls = []

        def process_data_events(time_limit):
            polls.append(time_limit)
            if len(polls) >= 3:
                release.set()

        def slow_send(*args):
            assert release.wait(5)
            return "<id@openmusic.test>"

        mock_channel.connection.process_data_events.side_effect = process_data_events
        worker_mailer.send_export.side_effect = slow_send

        outcome = consumer.handle_delivery(mock_channel, *make_delivery())

        assert outcome is JobOutcome.ACKED
        assert len(polls) >= 3
        assert set(polls) == {0}
        mock_channel.basic_ack.assert_called_once_with(delivery_tag=1)

    def test_connection_lost_while_sending(
        self, consumer, mock_channel, make_delivery, worker_mailer
    ):
        """Test a dropped connection during the send abandons the job."""
        release = threading.Event()
        mock_channel.connection.process_data_events.side_effect = StreamLostError("lost")
        worker_mailer.send_export.side_effect = lambda *args: release.wait(5)

        try:
            outcome = consumer.handle_delivery(mock_channel, *make_delivery())
        finally:
            release.set()

        assert outcome is JobOutcome.ABANDONED
        assert consumer.state is ConsumerState.DISCONNECTED
        mock_channel.basic_ack.assert_not_called()


class TestConnect:
    """Tests for the connect cycle."""

    def test_connects_after_failures(
        self, consumer, connection_factory, mock_broker_connection, mock_channel
    ):
        """Test transient connect failures are retried with backoff."""
        connection_factory.side_effect = [
            QueueUnavailableError("refused"),
            QueueUnavailableError("refused"),
            QueueUnavailableError("refused"),
            mock_broker_connection,
        ]

        assert consumer.connect() is True

        assert connection_factory.call_count == 4
        assert consumer.state is ConsumerState.IDLE
        mock_channel.basic_qos.assert_called_once_with(prefetch_count=1)
        mock_channel.confirm_delivery.assert_called_once()
        assert mock_channel.queue_declare.call_count == 4
        assert consumer.stats.reconnect_count == 0

    def test_connect_cycle_exhausted(self, consumer, connection_factory):
        """Test the cycle gives up after the configured attempts."""
        connection_factory.side_effect = QueueUnavailableError("refused")

        assert consumer.connect() is False

        assert connection_factory.call_count == 5
        assert consumer.state is ConsumerState.DISCONNECTED

    def test_setup_failure_closes_connection(
        self, consumer, connection_factory, mock_broker_connection, mock_channel
    ):
        """Test a connection whose channel setup fails is closed."""
        mock_channel.basic_qos.side_effect = [StreamLostError("lost"), None]

        assert consumer.connect() is True

        mock_broker_connection.close.assert_called_once()
        assert connection_factory.call_count == 2

    def test_connect_stops_on_shutdown(self, consumer, connection_factory):
        """Test a pending shutdown aborts the connect cycle."""
        consumer.request_shutdown()

        assert consumer.connect() is False
        connection_factory.assert_not_called()

    def test_conflicting_queue_stops_connect(
        self, consumer, connection_factory, mock_broker_connection, mock_channel
    ):
        """Test a queue declared with other arguments fails without reconnecting."""
        mock_channel.queue_declare.side_effect = ChannelClosedByBroker(
            406, "PRECONDITION_FAILED - inequivalent arg 'x-dead-letter-exchange'"
        )

        with pytest.raises(ExportConfigError):
            consumer.connect()

        connection_factory.assert_called_once()
        mock_broker_connection.close.assert_called_once()
        assert consumer.state is ConsumerState.DISCONNECTED

    def test_conflicting_queue_ends_run(self, consumer, mock_channel):
        """Test run() stops the consumer on a queue conflict."""
        mock_channel.queue_declare.side_effect = ChannelClosedByBroker(406, "PRECONDITION_FAILED")

        with pytest.raises(ExportConfigError):
            consumer.run()

        assert consumer.state is ConsumerState.STOPPED


class TestRunLoop:
    """Tests for run() and shutdown()."""

    def test_shutdown_releases_in_reverse_order(
        self,
        consumer,
        mock_channel,
        mock_broker_connection,
        make_delivery,
        worker_reader,
        worker_mailer,
    ):
        """Test cancel, channel, connection, catalog and mailer close in order."""
        order = []
        mock_channel.cancel.side_effect = lambda: order.append("cancel")
        mock_channel.close.side_effect = lambda: order.append("channel")
        mock_broker_connection.close.side_effect = lambda: order.append("connection")
        worker_reader.close.side_effect = lambda: order.append("reader")
        worker_mailer.close.side_effect = lambda: order.append("mailer")

        def deliveries(queue, inactivity_timeout):
            yield make_delivery()
            consumer.request_shutdown()
            yield None, None, None

        mock_channel.consume.side_effect = deliveries

        consumer.run()

        assert order == ["cancel", "channel", "connection", "reader", "mailer"]
        assert consumer.state is ConsumerState.STOPPED
        assert consumer.stats.sent_count == 1

    def test_reconnects_after_connection_loss(
        self, consumer, connection_factory, make_delivery
    ):
        """Test a lost connection starts a new connect cycle."""
        lost_channel = MagicMock(is_open=True)
        lost_channel.consume.side_effect = StreamLostError("connection lost")
        lost_connection = MagicMock(is_open=True)
        lost_connection.channel.return_value = lost_channel

        good_channel = MagicMock(is_open=True)
        good_connection = MagicMock(is_open=True)
        good_connection.channel.return_value = good_channel

        def deliveries(queue, inactivity_timeout):
            yield make_delivery()
            consumer.request_shutdown()
            yield None, None, None

        good_channel.consume.side_effect = deliveries
        connection_factory.side_effect = [lost_connection, good_connection]

        consumer.run()

        assert connection_factory.call_count == 2
        assert consumer.stats.reconnect_count == 1
        good_channel.basic_ack.assert_called_once_with(delivery_tag=1)
        assert consumer.state is ConsumerState.STOPPED

    def test_broker_failure_mid_job_reconnects(
        self, consumer, connection_factory, make_delivery
    ):
        """Test a failed ack drops the connection and the job is redelivered."""
        first_channel = MagicMock(is_open=True)
        first_channel.basic_ack.side_effect = StreamLostError("connection lost")
        first_channel.consume.return_value = iter([make_delivery()])
        first_connection = MagicMock(is_open=True)
        first_connection.channel.return_value = first_channel

        second_channel = MagicMock(is_open=True)
        second_connection = MagicMock(is_open=True)
        second_connection.channel.return_value = second_channel

        def redelivery(queue, inactivity_timeout):
            yield make_delivery()
            consumer.request_shutdown()
            yield None, None, None

        second_channel.consume.side_effect = redelivery
        connection_factory.side_effect = [first_connection, second_connection]

        consumer.run()

        assert consumer.stats.abandoned_count == 1
        assert consumer.stats.sent_count == 1
        second_channel.basic_ack.assert_called_once_with(delivery_tag=1)

    def test_exhausted_cycle_waits_and_retries(self, consumer, connection_factory):
        """Test an exhausted connect cycle is followed by another one."""
        calls = []

        def factory():
            calls.append(1)
            if len(calls) == 7:
                consumer.request_shutdown()
            raise QueueUnavailableError("refused")

        connection_factory.side_effect = factory

        consumer.run()

        assert len(calls) == 7
        assert consumer.state is ConsumerState.STOPPED

    def test_shutdown_is_idempotent(self, consumer, worker_reader):
        """Test a second shutdown does nothing."""
        consumer.shutdown()
        consumer.shutdown()

        worker_reader.close.assert_called_once()
