"""Task tracker: entity store, dependency graph, leases, scheduler, checkpoints and events."""
