# Sphinx configuration for the claude-runner API reference

import os
import sys
sys.path.insert(0, os.path.abspath('../src'))

from claude_runner import __version__  # noqa: E402

project = 'Claude Runner'
copyright = '2025, Claude Runner contributors'
author = 'Claude Runner contributors'
version = release = __version__

extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.napoleon',
    'sphinx.ext.viewcode',
    'sphinx.ext.intersphinx',
    'sphinx_autodoc_typehints',
]

exclude_patterns = ['_build']
html_theme = 'sphinx_rtd_theme'

# Pydantic models document their fields; skip the generated model_* machinery.
autodoc_default_options = {
    'members': True,
    'member-order': 'groupwise',
    'undoc-members': False,
    'exclude-members': 'model_config,model_fields,model_computed_fields',
}
autodoc_typehints = 'description'
always_document_param_types = True

# The library's docstrings are Google style only.
napoleon_google_docstring = True
napoleon_numpy_docstring = False

intersphinx_mapping = {
    'python': ('https://docs.python.org/3', None),
    'pydantic': ('https://docs.pydantic.dev/latest', None),
}
