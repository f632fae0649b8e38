from datetime import datetime, timezone

import pytest

from DonationChat.chat_shared import config
from DonationChat.chat_shared.types import Message
from DonationChat.chat.cli import _print_msg, parse_args


def _msg(**kw) -> Message:
    base = dict(
        id="101", conversation_id="42", sender_id="2", ciphertext="Y3Q=", nonce="bm9uY2U=",
        timestamp=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc), plaintext="hello",
    )
    base.update(kw)
    return Message(**base)


def test_parse_args_defaults():
    args = parse_args(["--email", "donor@example.org", "--conversation", "42"])
    assert args.email == "donor@example.org"
    assert args.conversation == "42"
    assert args.log_level == "WARNING"


def test_parse_args_requires_email():
    with pytest.raises(SystemExit):
        parse_args(["--conversation", "42"])


def test_print_counterpart_message(capsys):
    _print_msg(_msg(), own=False)
    out = capsys.readouterr().out
    assert "hello" in out
    assert "2" in out


def test_print_failed_own_message(capsys):
    _print_msg(_msg(sender_id="1", status=config.STATUS_FAILED), own=True)
    assert "not sent" in capsys.readouterr().out


def test_print_read_receipt(capsys):
    _print_msg(_msg(sender_id="1", delivered=True, read=True), own=True)
    assert "✓✓" in capsys.readouterr().out
