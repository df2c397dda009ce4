"""
Tests for the command line entry point.
"""

import logging

import pytest

from scheduler_service.main import build_parser, main


@pytest.fixture(autouse=True)
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


def test_parser_commands():
    parser = build_parser()

    assert parser.parse_args(["run"]).max_cycles is None
    assert parser.parse_args(["run", "--max-cycles", "3"]).max_cycles == 3
    assert parser.parse_args(["healthcheck"]).command == "healthcheck"
    with pytest.raises(SystemExit):
        parser.parse_args([])


def test_invalid_configuration_exits_with_2(monkeypatch):
    monkeypatch.setenv("MAX_RETRIES", "-1")

    assert main(["run"]) == 2


def test_missing_queue_endpoint_exits_with_2(monkeypatch):
    monkeypatch.setenv("QUEUE_PROVIDER", "aws-sqs")
    monkeypatch.delenv("SQS_PRIORITY_QUEUE_URL", raising=False)
    monkeypatch.delenv("SQS_REGULAR_QUEUE_URL", raising=False)

    assert main(["run", "--max-cycles", "1"]) == 2


def test_healthcheck_with_memory_queue(monkeypatch, capsys):
    monkeypatch.setenv("QUEUE_PROVIDER", "memory")
    monkeypatch.setenv("EMAIL_PROVIDER", "sendgrid")
    monkeypatch.setenv("SENDGRID_API_KEY", "SG.test")
    monkeypatch.setattr(
        "scheduler_service.email.sendgrid_provider.SendGridEmailDispatcher.health_check",
        _healthy,
    )

    assert main(["healthcheck"]) == 0
    assert '"status": "ok"' in capsys.readouterr().out


async def _healthy(self) -> bool:
    return True
