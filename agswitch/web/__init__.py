"""Provider- and storage-facing modules: OAuth, callback listener, account store, quota."""
