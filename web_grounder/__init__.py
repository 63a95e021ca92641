"""
Intent grounder components.

This package contains modular pieces for fusing page elements from several
sources, rendering Set-of-Mark overlays, and asking a vision LLM which
element(s) an editing request refers to.
"""
