"""Rule interpreter and safe fetch gateway for community book sources."""
