"""Calendar recurrence and approval engine for campus operations."""
