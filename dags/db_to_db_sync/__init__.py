"""Cross-database table synchronisation: batched FULL/INCREMENTAL sync and bucket checksum validation."""
