"""Two-pass AI collection: coordinator, context, prompt assembly and transports."""
