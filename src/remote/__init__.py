"""Remote node access: transport, node handles and command bundles."""
