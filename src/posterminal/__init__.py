"""Session and authentication lifecycle core for the point-of-sale terminal client."""
