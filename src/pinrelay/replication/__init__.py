"""Pin replication - request queue, retry policy, and the coordinator."""
