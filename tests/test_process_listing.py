from __future__ import annotations

from sessionkit.shared.services.process_listing import parse_ps_aux, session_id_from_args


SID = "0f1e2d3c-4b5a-6978-8796-a5b4c3d2e1f0"
OTHER_SID = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"

PS_OUTPUT = f"""\
USER       PID %CPU %MEM    VSZ   RSS TTY      STAT START   TIME COMMAND
dev       4242  3.5  1.2 123456 204800 ttys001  S+   10:01   0:05 claude -p --resume {SID} --verbose
dev       4243  0.1  0.5 123456 512000 ??       S    10:02   0:01 claude -p hello --session-id {OTHER_SID}
dev       4244  0.0  0.0  1000   100 ttys002  S+   10:03   0:00 grep claude
dev       4245  0.0  0.0  1000   100 ttys002  S+   10:03   0:00 node /usr/lib/claude/cli.js
dev       4246  9.0  0.2  1000 10240 ttys003  S+   10:04   0:00 claude
dev       4247  short line claude
"""


def test_parse_ps_aux_filters_and_sorts() -> None:
    processes = parse_ps_aux(PS_OUTPUT)

    assert [p.pid for p in processes] == [4243, 4242, 4246]
    by_pid = {p.pid: p for p in processes}
    assert by_pid[4243].mem_mb == 500
    assert by_pid[4243].session_id == OTHER_SID
    assert by_pid[4242].session_id == SID
    assert by_pid[4242].cpu == 3.5
    assert by_pid[4242].tty == "ttys001"
    assert by_pid[4242].start_time == "10:01"
    assert by_pid[4246].session_id is None


def test_process_to_dict_keys() -> None:
    process = parse_ps_aux(PS_OUTPUT)[0]
    assert set(process.to_dict()) == {"pid", "memMB", "cpu", "sessionId", "tty", "args", "startTime"}


def test_resume_takes_precedence_over_session_id() -> None:
    args = f"claude --session-id {OTHER_SID} --resume {SID}"
    assert session_id_from_args(args) == SID
    assert session_id_from_args("claude --help") is None
