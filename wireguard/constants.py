"""Protocol and implementation constants. Durations are in seconds."""

REKEY_AFTER_MESSAGES = 1 << 60
REJECT_AFTER_MESSAGES = (1 << 64) - (1 << 13) - 1
REKEY_AFTER_TIME = 120.0
REKEY_ATTEMPT_TIME = 90.0
REKEY_TIMEOUT = 5.0
MAX_TIMER_HANDSHAKES = 90 // 5  # REKEY_ATTEMPT_TIME / REKEY_TIMEOUT
REKEY_TIMEOUT_JITTER_MAX_MS = 334
REJECT_AFTER_TIME = 180.0
KEEPALIVE_TIMEOUT = 10.0
COOKIE_REFRESH_TIME = 120.0
HANDSHAKE_INITIATION_RATE = 1.0 / 50
PADDING_MULTIPLE = 16

UNDER_LOAD_AFTER_TIME = 1.0  # how long the device stays under load once detected
MAX_PEERS = 1 << 16  # maximum number of configured peers

IPV4_LEN = 4
IPV6_LEN = 16

IPV4_OFFSET_TOTAL_LENGTH = 2
IPV4_OFFSET_SRC = 12
IPV4_OFFSET_DST = IPV4_OFFSET_SRC + IPV4_LEN

IPV6_OFFSET_PAYLOAD_LENGTH = 4
IPV6_OFFSET_SRC = 8
IPV6_OFFSET_DST = IPV6_OFFSET_SRC + IPV6_LEN