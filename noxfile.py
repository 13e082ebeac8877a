import nox

nox.options.sessions = [
    "style",
    "lints",
    "tests",
]


SOURCES = (
    "noxfile.py",
    "setup.py",
    "phaseflow",
    "tests",
)


@nox.session
def style(session: nox.Session) -> None:
    session.install(".[lint]")
    session.run("ruff", "format", "--check", *SOURCES)
    session.run("ruff", "check", "--select", "I", *SOURCES)


@nox.session
def lints(session: nox.Session) -> None:
    session.install(".[lint]")
    session.run("ruff", "check", *SOURCES)


@nox.session()
def tests(session: nox.Session) -> None:
    # Install in development mode to for coverage analysis
    session.install("-e", ".[test]")
    session.run(
        "python3",
        # Run tests in development mode (enables extra checks)
        "-X",
        "dev",
        "-m",
        "pytest",
        "tests",
        "--cov",
        "phaseflow",
        "--cov",
        "tests",
        "--cov-report=term-missing",
        "--no-cov-on-fail",
        "--quiet",
    )


@nox.session(python=["3.8", "3.9", "3.10", "3.11", "3.12", "3.13"])
def full_tests(session: nox.Session) -> None:
    session.install(".[test]")
    session.run("python3", "-m", "pytest", "tests", "--quiet")
