"""inventory/ -- Asset, host and risk-assessment resolution engine for ServiceMap.

Layer rule: inventory/ imports only stdlib + third-party libraries (SQLAlchemy).
It does NOT import from api/ or core/. Every engine function takes an
OpContext from inventory.store as its first argument.
"""
