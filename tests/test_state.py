import os
import stat
import subprocess

from resident_voice.state import StateMarkers, write_private_text


def test_write_private_text(tmp_path):
    path = tmp_path / "nested" / "file"
    write_private_text(path, "42\n")

    assert path.read_text() == "42\n"
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    assert [p.name for p in path.parent.iterdir()] == ["file"]


def test_recording_marker_contents(tmp_path):
    markers = StateMarkers(tmp_path)
    markers.mark_recording(started_at=1700000000.7)

    marker = markers.read_recording()
    assert marker.pid == os.getpid()
    assert marker.started_at == 1700000000


def test_transitions_own_their_files(tmp_path):
    markers = StateMarkers(tmp_path)

    markers.mark_recording()
    assert markers.recording_path.exists()
    assert not markers.processing_path.exists()

    markers.mark_processing()
    assert not markers.recording_path.exists()
    assert markers.processing_path.exists()

    markers.clear_processing()
    assert not markers.processing_path.exists()


def test_clear_recording_on_cancel(tmp_path):
    markers = StateMarkers(tmp_path)
    markers.mark_recording()
    markers.clear_recording()

    assert markers.read_recording() is None
    # clearing twice is harmless
    markers.clear_recording()


def test_invalid_recording_marker(tmp_path):
    markers = StateMarkers(tmp_path)
    markers.recording_path.write_text("not a pid\n")
    assert markers.read_recording() is None


def test_daemon_pid(tmp_path):
    markers = StateMarkers(tmp_path)
    assert markers.read_daemon_pid() is None

    markers.write_daemon_pid()
    assert markers.read_daemon_pid() == os.getpid()

    markers.remove_daemon_pid()
    assert not markers.daemon_pid_path.exists()


def test_cleanup_stale(tmp_path):
    markers = StateMarkers(tmp_path)
    markers.write_daemon_pid()
    markers.mark_recording()
    markers.processing_path.write_text("")

    markers.cleanup_stale()

    assert list(tmp_path.iterdir()) == []


def test_cleanup_stale_reports_previous_daemon_and_session(tmp_path, caplog):
    markers = StateMarkers(tmp_path)
    markers.daemon_pid_path.write_text("999999\n")
    markers.recording_path.write_text("999999\n1700000000\n")

    markers.cleanup_stale()

    assert "Previous daemon (pid 999999)" in caplog.text
    assert "started at 1700000000 by pid 999999" in caplog.text
    assert not markers.daemon_pid_path.exists()
    assert not markers.recording_path.exists()


def test_refresh_runs_command_detached(tmp_path, monkeypatch):
    launched = []

    def fake_popen(args, **kwargs):
        launched.append((args, kwargs))

    monkeypatch.setattr(subprocess, "Popen", fake_popen)
    markers = StateMarkers(tmp_path, refresh_command="pkill -RTMIN+8 waybar")
    markers.mark_recording()
    markers.mark_processing()

    assert [args for args, _ in launched] == [["pkill", "-RTMIN+8", "waybar"]] * 2
    assert launched[0][1]["start_new_session"] is True


def test_refresh_without_command(tmp_path, monkeypatch):
    def fail_popen(*args, **kwargs):
        raise AssertionError("no command configured")

    monkeypatch.setattr(subprocess, "Popen", fail_popen)
    StateMarkers(tmp_path).mark_recording()


def test_refresh_failure_is_ignored(tmp_path):
    markers = StateMarkers(tmp_path, refresh_command="/nonexistent/refresh-bar")
    markers.mark_recording()
    assert markers.recording_path.exists()
