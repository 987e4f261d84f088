"""Git hosting service abstraction: URLs, models, adapters and the retrying client."""
