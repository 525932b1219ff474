"""Domain models passed between the gateway and the engine components."""
