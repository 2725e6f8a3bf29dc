"""
Reconciliation — matching documents into sets and comparing them.

    matching.py   — link evaluation (exact / fuzzy)
    comparison.py — header / table comparison formulas with tolerance
    engine.py     — arrival handling and set resolution
    review.py     — operator force / reject / rerun
"""
