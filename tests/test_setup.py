"""Test that the project setup is working correctly."""

import pnl_indexer


def test_version() -> None:
    """Test that version is defined."""
    assert pnl_indexer.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from pnl_indexer import accounting
    from pnl_indexer import gateway
    from pnl_indexer import indexer
    from pnl_indexer import ingestor
    from pnl_indexer import pricing
    from pnl_indexer import storage

    assert accounting is not None
    assert gateway is not None
    assert indexer is not None
    assert ingestor is not None
    assert pricing is not None
    assert storage is not None


def test_cli_parser_knows_every_command() -> None:
    from pnl_indexer.__main__ import COMMANDS, build_parser

    parser = build_parser()
    args = parser.parse_args(["position", "0xwallet", "0xtoken", "--price", "1.5"])
    assert args.command == "position"
    assert str(args.price) == "1.5"
    assert set(COMMANDS) == {
        "init-db",
        "add-token",
        "index-wallet",
        "sync-token",
        "recalculate",
        "position",
    }
