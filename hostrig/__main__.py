import sys


def run_cli() -> None:
    """
    Entry point to hostrig command.

    Cover imports with try/except, to handle errors raised while importing
    hostrig packages. Some may perform actions in import-time, and may
    raise exceptions.

    Import utils first, before CLI gets a chance to spawn a logger. Without
    hostrig.utils, we would not be able to intercept the exception below.
    """
    try:
        import hostrig.utils  # noqa: F401,I001,RUF100

        import hostrig.cli

        hostrig.cli.main()

    except ImportError as error:
        print("Error: hostrig package does not seem to be installed")
        raise SystemExit(1) from error
    except Exception as error:
        # `hostrig.utils` may be only partially imported if the import
        # itself failed, report the secondary exception as well.
        try:
            hostrig.utils.show_exception(error)
            raise SystemExit(2) from error

        except Exception as nested_error:
            import traceback

            print(f"Error: failed while reporting exception: {nested_error}", file=sys.stderr)
            traceback.print_exc()

            raise SystemExit(2) from nested_error


if __name__ == "__main__":
    run_cli()
