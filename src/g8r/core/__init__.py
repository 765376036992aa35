"""g8r core: errors, logging, settings, domain models, snapshot parsing,
ORM tables, the durable state store and store-backed locks."""
