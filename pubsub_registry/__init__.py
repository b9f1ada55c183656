"""Function and webhook configuration registry materialized from a compacted log."""
