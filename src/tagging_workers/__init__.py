"""Background enrichment: pulls tagging jobs off the queue and writes tags to file records."""
