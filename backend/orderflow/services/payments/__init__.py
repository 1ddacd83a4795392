"""Gateway payments: initiation, callback reconciliation, and expiry."""
