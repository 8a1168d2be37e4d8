# Sphinx configuration for the sapkg documentation.
import os
import sys

sys.path.insert(0, os.path.abspath("../src"))

# -- Project information -----------------------------------------------------
project = "sapkg"
copyright = "2026, sapkg contributors"
author = "sapkg contributors"
release = "0.1.0"

# -- General configuration ---------------------------------------------------
extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
    "sphinx.ext.viewcode",
    "myst_parser",
]

autodoc_member_order = "bysource"
autodoc_mock_imports = ["filelock"]
templates_path = ["_templates"]
exclude_patterns = ["_build", "Thumbs.db", ".DS_Store"]

# -- Options for HTML output -------------------------------------------------
html_theme = "furo"
html_title = "sapkg Documentation"
html_theme_options = {
    "sidebar_hide_name": False,
    "navigation_with_keys": True,
}
