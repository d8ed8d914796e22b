# pipeline/__init__.py
# ============================================================================
# DUCK STOREFRONT v1.0 — ORDER PIPELINE
# ============================================================================
# signer -> lifecycle engine -> payment gateway adapter
# Import submodules directly; this package re-exports nothing so that the
# storage layer can depend on pipeline.errors without import cycles.
# ============================================================================
