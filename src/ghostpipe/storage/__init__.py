"""Local disk access: atomic writes, tree walking and change watching."""
