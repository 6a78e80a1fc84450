# docs/source/conf.py -------------------------------------------
import pathlib, sys

# 1. Absolute path to the repository root (three levels up from this file)
PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[2]
sys.path.insert(0, PROJECT_ROOT.as_posix())      # must happen first
# ---------------------------------------------------------------

from turbit._version import __version__

# -- Project information -----------------------------------------------------
# https://www.sphinx-doc.org/en/master/usage/configuration.html#project-information

project = 'Turbit'
copyright = '2025, Turbit'
release = __version__

# -- General configuration ---------------------------------------------------
# https://www.sphinx-doc.org/en/master/usage/configuration.html#general-configuration

extensions = ['sphinx.ext.autodoc',
              'sphinx.ext.autodoc.typehints',
              'sphinx.ext.napoleon',
              'sphinx.ext.viewcode',
              'sphinx.ext.intersphinx']

autodoc_default_options = {
    'members': True,
    'undoc-members': False,
    'show-inheritance': True,
    'ignore-module-all': True,
}

# Napoleon (docstring style)
napoleon_google_docstring = True
napoleon_numpy_docstring = True

intersphinx_mapping = {
    'python': ('https://docs.python.org/3', None),
    'pandas': ('https://pandas.pydata.org/docs/', None),
}

# Theme
html_theme = 'furo'
templates_path = ['_templates']
exclude_patterns = []
html_static_path = ['_static']
