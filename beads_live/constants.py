# =============================================================================
# beads-live -- Protocol Constants
# =============================================================================
#
# Message kinds, subscription keys, timing and backoff defaults.
# =============================================================================

PROTOCOL_VERSION = 1
CLIENT_VERSION = "0.4.0"

# -- Timing (seconds) --------------------------------------------------------

CONNECTION_TIMEOUT = 10.0
PING_INTERVAL = 20.0  # websockets keepalive
PING_TIMEOUT = 20.0
REQUEST_TIMEOUT = None  # no timeout: a hung request surfaces as a dropped connection

# -- Reconnection -------------------------------------------------------------

RECONNECT_BASE_DELAY = 1.0
RECONNECT_MAX_DELAY = 30.0
RECONNECT_MAX_ATTEMPTS = -1  # -1 = infinite
RECONNECT_FACTOR = 1.5
RECONNECT_ABSOLUTE_CAP = 300.0  # 5 minutes

# -- Messages ------------------------------------------------------------------

MAX_MESSAGE_SIZE = 4_194_304  # 4 MB, full snapshots of a large workspace
MAX_BATCH_DEPTH = 4

# -- Wire prefixes -------------------------------------------------------------

PREFIX_MSGPACK = b"M:"

# -- Zlib magic bytes ----------------------------------------------------------

ZLIB_MAGIC = 0x78
ZLIB_METHODS = (0x01, 0x5E, 0x9C, 0xDA)

# -- WebSocket close codes -----------------------------------------------------

WS_CLOSE_NORMAL = 1000
WS_CLOSE_GOING_AWAY = 1001
WS_CLOSE_POLICY_VIOLATION = 1008
WS_CLOSE_INTERNAL_ERROR = 1011
WS_CLOSE_AUTH_FAILED = 4401
WS_CLOSE_AUTH_EXPIRED = 4403

# -- Request kinds -------------------------------------------------------------

MSG_SUBSCRIBE_LIST = "subscribe-list"
MSG_UNSUBSCRIBE_LIST = "unsubscribe-list"
MSG_LIST_WORKSPACES = "list-workspaces"
MSG_SET_WORKSPACE = "set-workspace"

# -- Pushed events -------------------------------------------------------------

EVENT_SNAPSHOT = "snapshot"
EVENT_UPSERT = "upsert"
EVENT_DELETE = "delete"
EVENT_WORKSPACE_CHANGED = "workspace-changed"
EVENT_BATCH = "batch"

PUSH_EVENTS = (EVENT_SNAPSHOT, EVENT_UPSERT, EVENT_DELETE)

# -- Query kinds ---------------------------------------------------------------

SPEC_ALL_ISSUES = "all-issues"
SPEC_READY_ISSUES = "ready-issues"
SPEC_IN_PROGRESS_ISSUES = "in-progress-issues"
SPEC_CLOSED_ISSUES = "closed-issues"
SPEC_BLOCKED_ISSUES = "blocked-issues"
SPEC_EPICS = "epics"
SPEC_ISSUE_DETAIL = "issue-detail"

# -- Subscription keys ---------------------------------------------------------

KEY_ISSUES = "tab:issues"
KEY_EPICS = "tab:epics"
KEY_BOARD_READY = "tab:board:ready"
KEY_BOARD_IN_PROGRESS = "tab:board:in-progress"
KEY_BOARD_CLOSED = "tab:board:closed"
KEY_BOARD_BLOCKED = "tab:board:blocked"
DETAIL_KEY_PREFIX = "detail:"

TAB_KEYS = (
    KEY_ISSUES,
    KEY_EPICS,
    KEY_BOARD_READY,
    KEY_BOARD_IN_PROGRESS,
    KEY_BOARD_CLOSED,
    KEY_BOARD_BLOCKED,
)

# -- Local filters -------------------------------------------------------------

STATUS_FILTERS = ("all", "open", "in_progress", "closed", "ready")
ISSUE_TYPES = ("bug", "feature", "task", "epic", "chore")
CLOSED_FILTERS = ("today", "3", "7")
CLIENT_LABEL_PREFIX = "client:"
WORK_LABEL_PREFIX = "work:"

DEFAULT_PRIORITY = 2  # beads "medium"
