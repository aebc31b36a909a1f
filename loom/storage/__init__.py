"""Storage layer -- SQLAlchemy models, engine and the session store."""
