"""Avatar/cover upload pipeline: validation, rate limiting, variants, storage."""
