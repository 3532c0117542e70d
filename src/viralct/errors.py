"""Exception and warning types shared across the package."""


class InvalidParameter(ValueError):
    """Malformed simulation, dataset, fitting or prediction configuration."""


class FitDiagnosticWarning(UserWarning):
    """A fit finished but its convergence diagnostics are outside the accepted bounds."""


class BackendFailure(RuntimeError):
    """The Pyro sampler or predictive call itself failed."""
