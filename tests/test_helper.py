import datetime
import re
import shutil

import pytest
import sh

from conftest import set_timezone
from nightshift.backup import helper


class TestParseDuration:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("7d", datetime.timedelta(days=7)),
            ("12h", datetime.timedelta(hours=12)),
            ("2w", datetime.timedelta(weeks=2)),
            ("30m", datetime.timedelta(minutes=30)),
            (" 90 s ", datetime.timedelta(seconds=90)),
            ("7D", datetime.timedelta(days=7)),
        ],
    )
    def test_valid(self, text, expected):
        assert helper.parse_duration(text) == expected

    @pytest.mark.parametrize("text", ["", "7", "d", "7 days", "-1d", "1.5d"])
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            helper.parse_duration(text)


class TestTimestamp:
    def test_format(self):
        stamp = helper.make_timestamp(datetime.datetime(2024, 1, 1, 9, 5, 3))
        assert stamp == "20240101_090503"

    def test_lexicographic_order_is_chronological(self):
        moments = [
            datetime.datetime(2023, 12, 31, 23, 59, 59),
            datetime.datetime(2024, 1, 1, 0, 0, 0),
            datetime.datetime(2024, 1, 10, 0, 0, 0),
            datetime.datetime(2024, 10, 1, 0, 0, 0),
        ]
        stamps = [helper.make_timestamp(moment) for moment in moments]
        assert sorted(stamps) == stamps

    def test_aware_time_is_named_in_local_time(self):
        set_timezone("America/New_York")
        moment = datetime.datetime(2024, 3, 14, 12, 0, 0, tzinfo=datetime.timezone.utc)
        assert helper.make_timestamp(moment) == "20240314_080000"

    def test_utc_now_is_aware(self):
        set_timezone("Europe/Berlin")
        assert helper.utc_now().utcoffset() == datetime.timedelta(0)


class TestLogFile:
    def test_lines_are_mirrored_with_timestamp(self, tmp_path):
        log_path = tmp_path / "backup.log"
        assert helper.attach_log_file(log_path)
        helper.print_line("[green]Archive created[/] at /backup/x.tar.gz")
        helper.print_warning("Warning: Source '/b' does not exist, skipping")
        helper.detach_log_file()

        lines = log_path.read_text().splitlines()
        assert len(lines) == 2
        assert re.match(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2} - ", lines[0])
        assert lines[0].endswith("-------- Archive created at /backup/x.tar.gz")
        assert "[green]" not in lines[0]
        assert "'/b' does not exist" in lines[1]

    def test_log_is_appended(self, tmp_path):
        log_path = tmp_path / "backup.log"
        log_path.write_text("earlier run\n")
        helper.attach_log_file(log_path)
        helper.print_line("later run")
        helper.detach_log_file()
        assert log_path.read_text().startswith("earlier run\n")

    def test_unopenable_log_is_not_fatal(self, tmp_path):
        assert not helper.attach_log_file(tmp_path / "missing-dir" / "backup.log")
        assert not helper.log_attached()

    def test_verbose_detail(self, tmp_path, capsys):
        helper.print_detail("hidden")
        assert "hidden" not in capsys.readouterr().out
        helper.verbose = True
        helper.print_detail("shown")
        assert "shown" in capsys.readouterr().out


def test_human_readable():
    assert helper.human_readable(2048) == "2.0 KiB"


@pytest.mark.skipif(shutil.which("sh") is None, reason="sh binary not available")
class TestRunCommandPolitely:
    def test_accepted_exit_code(self):
        proc = helper.run_command_politely(
            sh.Command("sh"), ["-c", "exit 3"], okCodes=(0, 3), nice=False
        )
        assert proc.exit_code == 3

    def test_other_exit_codes_raise(self):
        with pytest.raises(sh.ErrorReturnCode):
            helper.run_command_politely(sh.Command("sh"), ["-c", "exit 3"], nice=False)
