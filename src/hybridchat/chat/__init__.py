"""Chat turn orchestration, streaming, and the image tool."""
