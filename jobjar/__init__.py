"""jobjar.

A small build utility that packages a JRuby project, its Bundler-resolved gems
and the JRuby runtime into a single Hadoop job ``.jar``.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
