"""Constants and configuration for twamp-exporter."""

# HTTP listener
DEFAULT_LISTEN_ADDRESS = ":9853"
DEFAULT_SHUTDOWN_GRACE = 5.0  # Seconds in-flight scrapes get after SIGTERM

# Per-scrape deadline
DEFAULT_PROBE_TIMEOUT = 5.0
SCRAPE_TIMEOUT_HEADER = "X-Prometheus-Scrape-Timeout-Seconds"
SCRAPE_TIMEOUT_OFFSET = 0.5  # Leave room to render the response

# Measurement run
DEFAULT_RUN_COUNT = 3
DEFAULT_RUN_INTERVAL = 1.0
RUN_UNWIND_GRACE = 0.1  # Max wait for a stopped run to unwind

# TWAMP control and session negotiation
TWAMP_CONTROL_PORT = 862
CONNECT_TIMEOUT = 3.0
DEFAULT_SENDER_PORT = 0  # 0 = ephemeral
DEFAULT_RECEIVER_PORT = 6667
DEFAULT_REFLECTOR_TIMEOUT = 2
DEFAULT_PADDING = 42

# IP TOS byte values accepted by --tos
TOS_VALUES = {
    "BE": 0x00,
    "CS1": 0x20,
    "AF11": 0x28,
    "AF12": 0x30,
    "AF13": 0x38,
    "CS2": 0x40,
    "AF21": 0x48,
    "AF22": 0x50,
    "AF23": 0x58,
    "CS3": 0x60,
    "AF31": 0x68,
    "AF32": 0x70,
    "AF33": 0x78,
    "CS4": 0x80,
    "AF41": 0x88,
    "AF42": 0x90,
    "AF43": 0x98,
    "CS5": 0xA0,
    "EF": 0xB8,
    "CS6": 0xC0,
    "CS7": 0xE0,
}
DEFAULT_TOS = "BE"

# Labels of the twamp_duration_seconds gauge family
MEASUREMENT_KINDS = ["min", "max", "avg", "stddev"]

# Log levels offered by --log-level
LOG_LEVELS = ["debug", "info", "warning", "error"]
