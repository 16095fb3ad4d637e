import argparse

SUITES = ("service", "api", "mcp", "ui", "containers")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="iter-service integration test runner")
    selection = parser.add_mutually_exclusive_group()
    for suite in SUITES:
        selection.add_argument(
            f"--{suite}",
            dest="suite",
            action="store_const",
            const=suite,
            help=f"Run {suite} tests only",
        )
    selection.add_argument(
        "--all", dest="suite", action="store_const", const="all", help="Run all tests (default)"
    )
    parser.add_argument(
        "pattern", nargs="?", default=None, help="Only run tests matching this expression (pytest -k)"
    )
    parser.add_argument(
        "--docker",
        action="store_true",
        help="Run the service in containers (same as TEST_DOCKER=1)",
    )
    parser.add_argument("--base-url", type=str, help="Test an already running service at this URL")
    parser.add_argument(
        "--build", action="store_true", help="Build the service binary into tests/bin first"
    )
    parser.add_argument(
        "--build-images", action="store_true", help="Build the container images before running"
    )
    parser.add_argument(
        "--force-build", action="store_true", help="Rebuild container images even if built"
    )
    parser.add_argument(
        "--prune",
        action="store_true",
        help="Remove containers and networks left behind by aborted runs",
    )
    parser.add_argument("--results-root", type=str, help="Override the results directory")
    parser.add_argument("--fail-fast", action="store_true", help="Stop on first failure")
    parser.add_argument("--verbose", "-v", dest="verbose", action="store_true", help="Verbose output")
    parser.add_argument("--quiet", "-q", dest="verbose", action="store_false", help="Quiet output")
    parser.set_defaults(suite="all", verbose=True)
    return parser


def parse_args(argv=None):
    return build_parser().parse_args(argv)
