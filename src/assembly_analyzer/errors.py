"""Exceptions raised by the assembly analyzer."""


class AnalyzerError(Exception):
    """Base exception for all analyzer errors."""


class AssemblyLoadError(AnalyzerError):
    """Raised when the input binary cannot be opened as a .NET assembly."""


class MethodBodyUnavailable(AnalyzerError):
    """Raised when a method has no IL body (abstract, extern, runtime-implemented)."""


class ProjectDecompilationError(AnalyzerError):
    """Raised when the external decompiler fails to produce a project."""


class SettingsError(AnalyzerError):
    """Raised when analysis settings are incomplete or point at missing files."""
