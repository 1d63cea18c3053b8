"""Sphinx configuration for coffee-jax documentation."""

import os
import sys

sys.path.insert(0, os.path.abspath("../.."))

# -- Project information -----------------------------------------------------

project = "coffee-jax"
copyright = "2026, coffee-jax developers"
author = "coffee-jax developers"

# -- General configuration ---------------------------------------------------

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
    "sphinx.ext.intersphinx",
    "sphinx_autodoc_typehints",
    "sphinx_copybutton",
    "myst_parser",
]

source_suffix = {
    ".rst": "restructuredtext",
    ".md": "markdown",
}
master_doc = "index"
exclude_patterns = ["_build"]

# -- HTML output -------------------------------------------------------------

html_theme = "furo"
html_title = "coffee-jax"

# -- Docstrings --------------------------------------------------------------

# Google style only; Args/Returns/Raises sections throughout the package.
napoleon_numpy_docstring = False
napoleon_include_init_with_doc = True

autodoc_default_options = {
    "members": True,
    "member-order": "bysource",
    "show-inheritance": True,
}
autodoc_typehints = "description"

# -- Intersphinx -------------------------------------------------------------

# Cross-references for the types that appear in public signatures.
intersphinx_mapping = {
    "python": ("https://docs.python.org/3", None),
    "numpy": ("https://numpy.org/doc/stable/", None),
    "jax": ("https://jax.readthedocs.io/en/latest/", None),
    "equinox": ("https://docs.kidger.site/equinox/", None),
    "optimistix": ("https://docs.kidger.site/optimistix/", None),
}

copybutton_prompt_text = r">>> |\$ "
copybutton_prompt_is_regexp = True
