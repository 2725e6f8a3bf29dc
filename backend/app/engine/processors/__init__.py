"""Node processors, one per node kind (see ``app.engine.registry``)."""
