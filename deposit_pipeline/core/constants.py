# message headers
RETRY_COUNT_HEADER = "x-retry-count"
EXCEPTION_TYPE_HEADER = "x-exception-type"
EXCEPTION_MESSAGE_HEADER = "x-exception-message"
REPLAYED_AT_HEADER = "x-replayed-at"

# rabbitmq queue arguments
DEAD_LETTER_EXCHANGE_ARG = "x-dead-letter-exchange"
DEAD_LETTER_ROUTING_KEY_ARG = "x-dead-letter-routing-key"
MESSAGE_TTL_ARG = "x-message-ttl"

PERSISTENT_DELIVERY_MODE = 2

RECEIVE_CATEGORY = "receive"

DECIMAL_PLACES = 8
MAX_DIGITS = 18

# header values are truncated so a huge traceback cannot blow the frame size
MAX_HEADER_VALUE_LENGTH = 1024

# storage limits: amount is NUMERIC(18, 8), confirmations a 32-bit INTEGER,
# and an identifier's cipher token must fit in VARCHAR(512)
MIN_CONFIRMATIONS_VALUE = -(2**31)
MAX_CONFIRMATIONS_VALUE = 2**31 - 1
MAX_IDENTIFIER_BYTES = 256
