from __future__ import annotations

import io

import allure

from job_dispatch.dispatch.echo_worker import serve

pytestmark = [
    allure.epic("Dispatch Engine"),
    allure.feature("Demo Worker"),
]


def test_serve_handles_commands_until_exit() -> None:
    stdin = io.StringIO("echo hello\nfail broken\n\nplot A1\nexit\necho never\n")
    stdout = io.StringIO()
    stderr = io.StringIO()

    code = serve(stdin, stdout, stderr, banner="ready")

    assert code == 0
    assert stdout.getvalue().splitlines() == ["ready", "hello", "ok plot A1"]
    assert stderr.getvalue().splitlines() == ["error: broken"]


def test_serve_crash_returns_exit_code() -> None:
    code = serve(io.StringIO("crash 9\necho after\n"), io.StringIO(), io.StringIO())

    assert code == 9


def test_serve_returns_zero_at_end_of_input() -> None:
    assert serve(io.StringIO("echo only\n"), io.StringIO(), io.StringIO()) == 0
