"""Message types and JSON codec for operator communication."""
