__version__ = "0.4.2"
__description__ = "relgraph : JSON:API relationship and query resolution for SQLAlchemy"
