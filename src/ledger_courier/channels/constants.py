"""Constants for ledger channels."""

# Protocol version
COURIER_PROTOCOL_VERSION = "1.0"
DEFAULT_CIPHER_SUITE = "HMACSHA512-ED25519-AES256GCM"

# Key sizes
SHARED_SECRET_SIZE = 32
CHANNEL_ID_SIZE = 64  # HMAC-SHA-512 output
SEQUENCE_HASH_SIZE = 64  # SHA-512 of the slot verification key
SLOT_SEED_SIZE = 32  # Ed25519 private seed
SLOT_PUBLIC_KEY_SIZE = 32
AES_KEY_SIZE = 32  # 256 bits
NONCE_SIZE = 12  # 96 bits for GCM
GCM_TAG_SIZE = 16

# Largest index; slot seeds encode n in 8 bytes
MAX_SEQUENCE_INDEX = (1 << 64) - 1

# Key derivation contexts
KDF_INFO_CHANNEL_ID = b"ledger-courier-channel-id"
KDF_INFO_SLOT_SEED = b"ledger-courier-slot-seed"
KDF_INFO_MESSAGE_KEY = b"ledger-courier-message-key"
KDF_INFO_AGREEMENT = b"ledger-courier-key-agreement"

# Context prefix for directional (one-way) channels
ONE_WAY_CONTEXT_PREFIX = b"ledger-courier-one-way:"

# Membership limits
MAX_CHANNEL_MEMBERS = 1000
