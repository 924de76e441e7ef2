"""Core building blocks: hashing, pairing, discovery, tags, metadata, retry, scheduling."""
