"""Board graph model, node placement and persistence."""
