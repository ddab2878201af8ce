"""Links between contexts and their supervision."""
