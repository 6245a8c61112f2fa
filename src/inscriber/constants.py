DEFAULT_BLOCK_POLL_INTERVAL = 120  # seconds, independent of chain cadence
DEFAULT_RECONCILE_INTERVAL = 30  # seconds
DEFAULT_MAX_POLL_BACKOFF = 600  # seconds

# Competition rules
DEFAULT_LEADERBOARD_MIN_BLOCKS = 2  # blocks a leader must defend before winning
DEFAULT_MAX_LEADER_BLOCKS = 5  # leadership attempt deadline, in blocks
DEFAULT_MIN_VOTES_TO_LEAD = 1

# Inscription orders
DEFAULT_INSCRIPTION_FEE_RATE = 15  # sat/vB
DEFAULT_INSCRIPTION_PROJECT = "bitmemes"
DEFAULT_WALLET_RESERVE_SATS = 0
STUCK_ORDER_WARN_HOURS = 6
STUCK_ORDER_RESET_HOURS = 0  # 0 disables automatic reset

# Progress checkpoint singleton row
CHECKPOINT_ID = 1

# Pause between marketplace status calls inside one reconcile pass
RECONCILE_REQUEST_SPACING = 0.5  # seconds

API_PORT = 8080
SHUTDOWN_DRAIN_TIMEOUT = 30  # seconds
