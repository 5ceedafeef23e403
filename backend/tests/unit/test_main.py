from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pydantic import SecretStr

from kisbroker import main as cli
from kisbroker.core.exceptions import AuthenticationError
from kisbroker.core.token_manager import AccessToken
from kisbroker.models import TickEvent
from kisbroker.realtime.feed import FeedChannel, FeedState, FeedStatusEvent


@pytest.fixture
def stack(settings):
    stack = MagicMock()
    stack.settings = settings
    issued = datetime(2024, 1, 17, 1, 0, tzinfo=timezone.utc)
    stack.tokens.get_valid_token = AsyncMock(return_value=AccessToken(
        value=SecretStr("token"),
        issued_at=issued,
        expires_at=issued + timedelta(hours=8),
    ))
    stack.feed.subscribe = AsyncMock()
    stack.feed.start = AsyncMock()
    return stack


class TestParser:
    def test_stream_arguments(self):
        args = cli.build_parser().parse_args(["--virtual", "stream", "005930", "000660", "--limit", "5"])

        assert args.virtual is True
        assert args.command == "stream"
        assert args.instruments == ["005930", "000660"]
        assert args.limit == 5

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])


class TestCommands:
    @pytest.mark.asyncio
    async def test_check_passes(self, stack, capsys):
        assert await cli.run_check(stack) == 0

        out = capsys.readouterr().out
        assert "PASS  access token issued" in out
        assert "Bearer" not in out

    @pytest.mark.asyncio
    async def test_check_reports_policy_problems(self, stack, capsys):
        stack.settings = stack.settings.model_copy(update={"rate_limit_per_second": 50})

        assert await cli.run_check(stack) == 1

        assert "FAIL  rate_limit_per_second" in capsys.readouterr().out
        stack.tokens.get_valid_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stream_stops_at_limit(self, stack, capsys):
        channel = FeedChannel("cli")
        for sequence in (100, 110, 120):
            channel.put(TickEvent(
                instrument="005930",
                price=Decimal("71500"),
                volume=2,
                timestamp=datetime(2024, 1, 17, 10, 0, 1),
                trade_date=datetime(2024, 1, 17).date(),
                sequence=sequence,
            ))
        stack.feed.events = MagicMock(return_value=channel)

        assert await cli.run_stream(stack, ["005930"], limit=2) == 0

        assert capsys.readouterr().out.count("005930 71500 x2") == 2
        stack.feed.subscribe.assert_awaited_once_with("005930", channel="cli")

    @pytest.mark.asyncio
    async def test_stream_ends_on_feed_failure(self, stack, capsys):
        channel = FeedChannel("cli")
        channel.put(FeedStatusEvent(state=FeedState.FAILED, reason="closed by server"))
        stack.feed.events = MagicMock(return_value=channel)

        assert await cli.run_stream(stack, ["005930"]) == 1

        assert "feed FAILED: closed by server" in capsys.readouterr().err


class TestMain:
    def test_broker_error_exit_code(self, settings, capsys):
        with patch.object(cli, "get_settings", return_value=settings), \
                patch.object(cli, "setup_logging"), \
                patch.object(cli, "run_command", AsyncMock(side_effect=AuthenticationError("bad key", code="EGW00103"))):
            assert cli.main(["check"]) == 2

        assert "EGW00103" in capsys.readouterr().err

    def test_virtual_flag_switches_environment(self, settings):
        run = AsyncMock(return_value=0)
        with patch.object(cli, "get_settings", return_value=settings), \
                patch.object(cli, "setup_logging"), \
                patch.object(cli, "run_command", run):
            assert cli.main(["--virtual", "balance"]) == 0

        assert run.await_args.args[1].kis_virtual is True
