"""
Built-in adapter plugins.

Each subdirectory is one plugin and follows the same contract as user
plugins: its ``__init__.py`` exports ``metadata`` and ``Adapter``.
"""
