from typing import Optional, Sequence

from pydantic import BaseModel, Field, ValidationError, model_validator

from core.config import Config, ConfigOpts
from core.constants import ESPLORA_API_URLS, UNISAT_API_URLS, BitcoinNetwork
from core.errors import ConfigurationError
from inscriber.constants import (
    API_PORT,
    DEFAULT_BLOCK_POLL_INTERVAL,
    DEFAULT_INSCRIPTION_FEE_RATE,
    DEFAULT_INSCRIPTION_PROJECT,
    DEFAULT_LEADERBOARD_MIN_BLOCKS,
    DEFAULT_MAX_LEADER_BLOCKS,
    DEFAULT_MAX_POLL_BACKOFF,
    DEFAULT_MIN_VOTES_TO_LEAD,
    DEFAULT_RECONCILE_INTERVAL,
    DEFAULT_WALLET_RESERVE_SATS,
    STUCK_ORDER_RESET_HOURS,
    STUCK_ORDER_WARN_HOURS,
)
from inscriber.models import ContenderSweepPolicy, DethronePolicy, OrderFailurePolicy


class CompetitionSettings(BaseModel):
    """Rules for one contest run."""

    leaderboard_min_blocks: int = Field(default=DEFAULT_LEADERBOARD_MIN_BLOCKS, ge=1)
    max_leader_blocks: int = Field(default=DEFAULT_MAX_LEADER_BLOCKS, ge=1)
    min_votes_to_lead: int = Field(default=DEFAULT_MIN_VOTES_TO_LEAD, ge=0)
    dethrone_policy: DethronePolicy = DethronePolicy.EXPIRE
    contender_sweep_policy: ContenderSweepPolicy = ContenderSweepPolicy.NONE

    @model_validator(mode="after")
    def _check_deadline(self) -> "CompetitionSettings":
        if self.max_leader_blocks < self.leaderboard_min_blocks:
            raise ValueError(
                "max_leader_blocks must be >= leaderboard_min_blocks "
                f"({self.max_leader_blocks} < {self.leaderboard_min_blocks})"
            )
        return self


class InscriberConfig(Config):
    def __init__(self, argv: Optional[Sequence[str]] = None):
        opts = ConfigOpts(
            service_name="inscriber",
            settings_files=["inscriber.toml"],
        )
        super().__init__(opts, argv)
        self.log_file = self._normalize_log_file(self.settings.get("log_file"))

    def add_args(self):
        """Add command line arguments"""
        super().add_args()

        # database configuration
        self._parser.add_argument(
            "--database-url",
            type=str,
            help="PostgreSQL database URL",
            default=self.settings.get(
                "database_url",
                "postgresql+asyncpg://postgres@localhost/inscriber",
            ),
        )

        # admin API
        self._parser.add_argument(
            "--api-host",
            type=str,
            help="Host for the admin/status API to bind to",
            default=self.settings.get("api_host", "0.0.0.0"),
        )
        self._parser.add_argument(
            "--api-port",
            type=int,
            help="Port for the admin/status API to bind to",
            default=self.settings.get("api_port", API_PORT),
        )

        # loop cadence
        self._parser.add_argument(
            "--block-poll-interval",
            type=int,
            help="Seconds between block monitor polls",
            default=self.settings.get(
                "block_poll_interval", DEFAULT_BLOCK_POLL_INTERVAL
            ),
        )
        self._parser.add_argument(
            "--reconcile-interval",
            type=int,
            help="Seconds between inscription order reconciliation passes",
            default=self.settings.get("reconcile_interval", DEFAULT_RECONCILE_INTERVAL),
        )
        self._parser.add_argument(
            "--max-poll-backoff",
            type=int,
            help="Upper bound (seconds) for the loop sleep after repeated failures",
            default=self.settings.get("max_poll_backoff", DEFAULT_MAX_POLL_BACKOFF),
        )
        self._parser.add_argument(
            "--start-block",
            type=int,
            help="First height to process on a fresh database (0 = current tip)",
            default=self.settings.get("start_block", 0),
        )

        # competition rules
        self._parser.add_argument(
            "--leaderboard-min-blocks",
            type=int,
            help="Blocks a leader must defend before it wins",
            default=self.settings.get(
                "leaderboard_min_blocks", DEFAULT_LEADERBOARD_MIN_BLOCKS
            ),
        )
        self._parser.add_argument(
            "--max-leader-blocks",
            type=int,
            help="Blocks after promotion at which an unsuccessful leader expires",
            default=self.settings.get("max_leader_blocks", DEFAULT_MAX_LEADER_BLOCKS),
        )
        self._parser.add_argument(
            "--min-votes-to-lead",
            type=int,
            help="Minimum total votes required to become leader",
            default=self.settings.get("min_votes_to_lead", DEFAULT_MIN_VOTES_TO_LEAD),
        )
        self._parser.add_argument(
            "--dethrone-policy",
            type=str,
            choices=[policy.value for policy in DethronePolicy],
            help="Status given to a leader that loses rank #1",
            default=self.settings.get("dethrone_policy", DethronePolicy.EXPIRE.value),
        )
        self._parser.add_argument(
            "--contender-sweep-policy",
            type=str,
            choices=[policy.value for policy in ContenderSweepPolicy],
            help="When losing active contenders are expired in bulk",
            default=self.settings.get(
                "contender_sweep_policy", ContenderSweepPolicy.NONE.value
            ),
        )
        self._parser.add_argument(
            "--order-failure-policy",
            type=str,
            choices=[policy.value for policy in OrderFailurePolicy],
            help="Where a proposal goes when its inscription order fails",
            default=self.settings.get(
                "order_failure_policy", OrderFailurePolicy.REACTIVATE.value
            ),
        )

        # chain provider
        self._parser.add_argument(
            "--network",
            type=str,
            choices=[network.value for network in BitcoinNetwork],
            help="Bitcoin network",
            default=self.settings.get("network", BitcoinNetwork.Mainnet.value),
        )
        self._parser.add_argument(
            "--chain-api-url",
            type=str,
            help="Esplora API base URL (defaults to the public one for --network)",
            default=self.settings.get("chain_api_url"),
        )
        self._parser.add_argument(
            "--request-timeout",
            type=float,
            help="Timeout (seconds) for every external HTTP call",
            default=self.settings.get("request_timeout", 10.0),
        )

        # marketplace
        self._parser.add_argument(
            "--marketplace-url",
            type=str,
            help="Inscription marketplace API base URL",
            default=self.settings.get("marketplace_url"),
        )
        self._parser.add_argument(
            "--marketplace-api-key",
            type=str,
            help="Inscription marketplace API key",
            default=self.settings.get("marketplace_api_key"),
        )
        self._parser.add_argument(
            "--marketplace-fee-rate",
            type=int,
            help="Fee rate (sat/vB) requested for inscription orders",
            default=self.settings.get(
                "marketplace_fee_rate", DEFAULT_INSCRIPTION_FEE_RATE
            ),
        )
        self._parser.add_argument(
            "--marketplace-output-value",
            type=int,
            help="Postage (sats) of the inscription output",
            default=self.settings.get("marketplace_output_value", 546),
        )
        self._parser.add_argument(
            "--inscription-receive-address",
            type=str,
            help="Address receiving inscriptions (defaults to the wallet address)",
            default=self.settings.get("inscription_receive_address"),
        )
        self._parser.add_argument(
            "--inscription-project",
            type=str,
            help="Project name written into every inscription payload",
            default=self.settings.get(
                "inscription_project", DEFAULT_INSCRIPTION_PROJECT
            ),
        )

        # funding wallet
        self._parser.add_argument(
            "--wallet-rpc-url",
            type=str,
            help="Bitcoin Core wallet RPC URL, e.g. http://127.0.0.1:8332/wallet/inscriber",
            default=self.settings.get("wallet_rpc_url"),
        )
        self._parser.add_argument(
            "--wallet-rpc-user",
            type=str,
            help="Bitcoin Core RPC user",
            default=self.settings.get("wallet_rpc_user"),
        )
        self._parser.add_argument(
            "--wallet-rpc-password",
            type=str,
            help="Bitcoin Core RPC password",
            default=self.settings.get("wallet_rpc_password"),
        )
        self._parser.add_argument(
            "--wallet-address",
            type=str,
            help="Funding wallet address (queried from the node when unset)",
            default=self.settings.get("wallet_address"),
        )
        self._parser.add_argument(
            "--wallet-reserve-sats",
            type=int,
            help="Balance (sats) the wallet must keep after paying an order",
            default=self.settings.get(
                "wallet_reserve_sats", DEFAULT_WALLET_RESERVE_SATS
            ),
        )

        # stuck orders
        self._parser.add_argument(
            "--stuck-order-warn-hours",
            type=float,
            help="Warn about open orders older than this many hours",
            default=self.settings.get("stuck_order_warn_hours", STUCK_ORDER_WARN_HOURS),
        )
        self._parser.add_argument(
            "--stuck-order-reset-hours",
            type=float,
            help="Auto-reset open orders older than this many hours (0 disables)",
            default=self.settings.get(
                "stuck_order_reset_hours", STUCK_ORDER_RESET_HOURS
            ),
        )

    @property
    def chain_api_url(self) -> str:
        url = self.settings.get("chain_api_url")
        if url:
            return url
        return ESPLORA_API_URLS[BitcoinNetwork(self.settings.get("network"))]

    @property
    def marketplace_url(self) -> str:
        url = self.settings.get("marketplace_url")
        if url:
            return url
        return UNISAT_API_URLS[BitcoinNetwork(self.settings.get("network"))]

    def competition_settings(self) -> CompetitionSettings:
        try:
            return CompetitionSettings(
                leaderboard_min_blocks=self.settings.get("leaderboard_min_blocks"),
                max_leader_blocks=self.settings.get("max_leader_blocks"),
                min_votes_to_lead=self.settings.get("min_votes_to_lead"),
                dethrone_policy=self.settings.get("dethrone_policy"),
                contender_sweep_policy=self.settings.get("contender_sweep_policy"),
            )
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid competition settings: {exc}") from exc

    @staticmethod
    def _normalize_log_file(value) -> str | None:
        if value is None:
            return None
        string_value = str(value).strip()
        return string_value or None
