"""Tests for channel.py: connection state machine, backoff and calibration resend."""

from calibration import CalibrationValues
from channel import ConnectionState, ControlChannel, backoff_delay
from conftest import FakeTransport


def make_channel(loop, **kwargs):
    return ControlChannel(FakeTransport, loop=loop, **kwargs)


def connect_and_open(channel, address="10.0.0.5"):
    channel.connect(address)
    transport = FakeTransport.instances[-1]
    transport.fire_open()
    return transport


class TestBackoffDelay:

    def test_increasing_then_capped(self):
        assert [backoff_delay(n) for n in range(1, 8)] == [1.0, 2.0, 3.0, 4.0, 5.0, 5.0, 5.0]


class TestConnect:

    def test_initial_state(self, fake_loop):
        channel = make_channel(fake_loop)
        assert channel.state == ConnectionState.DISCONNECTED
        assert channel.url is None
        assert channel.status_text == "Disconnected"

    def test_connect_builds_url(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        channel.connect("10.0.0.5")
        assert channel.state == ConnectionState.CONNECTING
        assert fake_transports[-1].url == "ws://10.0.0.5:81/"

    def test_custom_port(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop, port=8181)
        channel.connect("127.0.0.1")
        assert fake_transports[-1].url == "ws://127.0.0.1:8181/"

    def test_open_sends_greeting(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        transport = connect_and_open(channel)
        assert channel.state == ConnectionState.CONNECTED
        assert channel.connected
        assert transport.sent == ["hello"]
        assert channel.status_text == "Connected to 10.0.0.5"

    def test_state_change_callback(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        seen = []
        channel.on_state_change = seen.append
        connect_and_open(channel)
        assert seen == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]

    def test_messages_surface_verbatim(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        received = []
        channel.on_message = received.append
        transport = connect_and_open(channel)
        transport.fire_message("Hola App")
        assert channel.last_message == "Hola App"
        assert received == ["Hola App"]

    def test_new_address_supersedes_old_link(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        old = connect_and_open(channel, "10.0.0.5")
        channel.connect("10.0.0.9")
        assert old.closed_with[0] == 1000
        assert fake_transports[-1].url == "ws://10.0.0.9:81/"
        # late events from the replaced link are ignored
        old.fire_close(1006)
        assert channel.state == ConnectionState.CONNECTING


class TestSend:

    def test_send_when_disconnected_is_dropped(self, fake_loop, capsys):
        channel = make_channel(fake_loop)
        assert channel.send("A1_IN1:10") is False
        assert "Not connected" in capsys.readouterr().out

    def test_send_while_connecting_is_dropped(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        channel.connect("10.0.0.5")
        assert channel.send("A1_IN1:10") is False
        assert fake_transports[-1].sent == []

    def test_send_passes_raw_token(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        transport = connect_and_open(channel)
        assert channel.send("B2_IN2:77") is True
        assert transport.sent[-1] == "B2_IN2:77"

    def test_transport_send_error_reported_as_false(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        transport = connect_and_open(channel)
        transport.ready_state = 3  # closed underneath us
        assert channel.send("A1_IN1:1") is False


class TestReconnect:

    def test_abnormal_close_schedules_reconnect(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        transport = connect_and_open(channel)
        transport.fire_close(1006)
        assert channel.state == ConnectionState.RECONNECTING
        assert channel.attempts == 1
        assert fake_loop.delays() == [1.0]

    def test_error_schedules_reconnect(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        channel.connect("10.0.0.5")
        fake_transports[-1].fire_error(OSError("refused"))
        assert channel.state == ConnectionState.RECONNECTING
        assert "refused" in channel.get_status()["last_error"]

    def test_error_then_close_counts_once(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        channel.connect("10.0.0.5")
        transport = fake_transports[-1]
        transport.fire_error()
        transport.fire_close(1006)
        assert channel.attempts == 1
        assert len(fake_loop.pending()) == 1

    def test_delay_elapses_then_connects_again(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        connect_and_open(channel).fire_close(1006)
        fake_loop.advance(0.99)
        assert len(fake_transports) == 1
        fake_loop.advance(0.01)
        assert len(fake_transports) == 2
        assert channel.state == ConnectionState.CONNECTING
        assert fake_transports[-1].url == "ws://10.0.0.5:81/"

    def test_backoff_sequence_then_failed(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        channel.connect("10.0.0.5")
        delays = []
        fake_transports[-1].fire_close(1006)
        while channel.state == ConnectionState.RECONNECTING:
            delays.append(fake_loop.delays()[0])
            fake_loop.advance(delays[-1])
            fake_transports[-1].fire_close(1006)

        assert delays == [1.0, 2.0, 3.0, 4.0, 5.0]
        assert channel.state == ConnectionState.FAILED
        assert fake_loop.pending() == []
        attempts_made = len(fake_transports)
        fake_loop.advance(60)
        assert len(fake_transports) == attempts_made
        assert channel.status_text == "Connection failed after 5 attempts"

    def test_success_resets_attempts(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        connect_and_open(channel).fire_close(1006)
        fake_loop.advance(1.0)
        fake_transports[-1].fire_open()
        assert channel.attempts == 0
        fake_transports[-1].fire_close(1006)
        assert fake_loop.delays() == [1.0]

    def test_normal_close_never_reconnects(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        transport = connect_and_open(channel)
        transport.fire_close(1000)
        assert channel.state == ConnectionState.DISCONNECTED
        assert fake_loop.pending() == []
        fake_loop.advance(30)
        assert len(fake_transports) == 1

    def test_normal_close_mid_backoff_sequence(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        connect_and_open(channel).fire_close(1006)
        fake_loop.advance(1.0)
        fake_transports[-1].fire_open()
        fake_transports[-1].fire_close(1000)
        assert fake_loop.pending() == []

    def test_manual_reconnect_after_failure(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop, max_attempts=1)
        channel.connect("10.0.0.5")
        fake_transports[-1].fire_close(1006)
        fake_loop.advance(1.0)
        fake_transports[-1].fire_close(1006)
        assert channel.state == ConnectionState.FAILED

        assert channel.reconnect() is True
        assert channel.state == ConnectionState.CONNECTING
        assert channel.attempts == 0

    def test_manual_reconnect_skips_backoff(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        connect_and_open(channel).fire_close(1006)
        assert channel.reconnect() is True
        assert len(fake_transports) == 2
        assert fake_loop.pending() == []

    def test_manual_reconnect_without_address(self, fake_loop):
        channel = make_channel(fake_loop)
        assert channel.reconnect() is False


class TestClose:

    def test_close_cancels_pending_reconnect(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        connect_and_open(channel).fire_close(1006)
        channel.close()
        assert channel.state == ConnectionState.DISCONNECTED
        fake_loop.advance(10)
        assert len(fake_transports) == 1

    def test_close_uses_normal_code(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        transport = connect_and_open(channel)
        channel.close()
        assert transport.closed_with[0] == 1000
        assert not channel.connected

    def test_events_after_close_are_ignored(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        transport = connect_and_open(channel)
        channel.close()
        transport.fire_message("late")
        transport.fire_close(1006)
        assert channel.last_message is None
        assert channel.state == ConnectionState.DISCONNECTED
        assert fake_loop.pending() == []


class TestCalibrationOnConnect:

    def test_held_calibration_sent_after_settle_delay(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        channel.calibration = CalibrationValues()
        transport = connect_and_open(channel)
        assert transport.sent == ["hello"]
        fake_loop.advance(0.5)
        assert len(transport.sent) == 2
        assert transport.sent[1].startswith("CALIB:")

    def test_resent_on_every_reconnect(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        channel.calibration = CalibrationValues()
        connect_and_open(channel)
        fake_loop.advance(0.5)
        fake_transports[-1].fire_close(1006)
        fake_loop.advance(1.0)
        fake_transports[-1].fire_open()
        fake_loop.advance(0.5)
        assert [t for t in fake_transports[-1].sent if t.startswith("CALIB:")]

    def test_no_calibration_held_sends_only_greeting(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        transport = connect_and_open(channel)
        fake_loop.advance(1.0)
        assert transport.sent == ["hello"]

    def test_drop_before_settle_cancels_send(self, fake_loop, fake_transports):
        channel = make_channel(fake_loop)
        channel.calibration = CalibrationValues()
        transport = connect_and_open(channel)
        transport.fire_close(1006)
        assert fake_loop.delays() == [1.0]
        fake_loop.advance(0.5)
        assert transport.sent == ["hello"]
