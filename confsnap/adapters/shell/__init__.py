"""Shell bindings — the only place external commands are spawned."""
