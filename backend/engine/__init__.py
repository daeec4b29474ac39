"""
Memory engine: extraction, relationship mapping, context ranking and
consolidation on top of the graph store and relevance index in `db`.
"""
