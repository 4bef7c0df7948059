from decimal import Decimal

import pytest

from conftest import z_address
from zlink_cli import build_parser, build_request, main
from zlink_node.core.exceptions import ZlinkError


def test_send_with_payment_uri():
    address = z_address("shop")
    args = build_parser().parse_args(["send", z_address("me"), f"hush:{address}?amt=2.5&memo=order%2042"])
    request = build_request(args, "hush")
    recipient = request.recipients[0]
    assert recipient.address == address
    assert Decimal(recipient.amount) == Decimal("2.5")
    assert recipient.memo == "order 42"
    assert not request.fee.is_custom


def test_explicit_amount_and_fee_win():
    args = build_parser().parse_args(["send", z_address("me"), f"hush:{z_address('x')}?amt=2.5",
                                      "1", "--fee", "0.001", "--memo", "hi"])
    request = build_request(args, "hush")
    assert request.recipients[0].amount == "1"
    assert request.recipients[0].memo == "hi"
    assert request.fee.amount == Decimal("0.001")


def test_send_needs_an_amount():
    args = build_parser().parse_args(["send", z_address("me"), z_address("you")])
    with pytest.raises(ZlinkError):
        build_request(args, "hush")


def test_no_command_prints_help(capsys):
    assert main([]) == 1
    assert "usage" in capsys.readouterr().out


def test_bad_config_file_reports_error(tmp_path, capsys):
    path = tmp_path / "config.yaml"
    path.write_text("rpc: [unclosed")
    assert main(["--config", str(path), "status"]) == 1
    assert capsys.readouterr().out.startswith("Error:")
