"""
Start a throwaway containerd and pull images through it,
outside of the test runner, to debug the redirector by hand.
"""

from argparse import ArgumentParser
from datetime import datetime
from sys import exit

from dev.lib.util import codeMessage, console, step
from e2e.containerd.cases import loadCases
from e2e.containerd.harness import CONTAINERD_VERSIONS, ContainerdTester


def main(version: str, install: bool, refs: list[str]) -> int:
    # Pairs of (image reference, whether the pull should succeed).
    if refs:
        pulls = [(ref, True) for ref in refs]
    else:
        pulls = [(case.ref(), case.expectSuccess) for case in loadCases()]

    start = datetime.now()
    failures = 0

    with step(f'Starting containerd [bold]{version}[/bold]'):
        tester = ContainerdTester(version, install=install)

    with tester:
        console.print(f'Listening on [bold]{tester.socketAddress}[/bold]')
        for ref, expectSuccess in pulls:
            result = tester.pull(ref)
            if (result.returncode == 0) == expectSuccess:
                outcome = 'pulled' if expectSuccess else 'failed as expected'
                console.print(f'[green]✔[/green] [bold]{ref}[/bold] {outcome}')
            else:
                failures += 1
                console.print(f'[red]✘[/red] [bold]{ref}[/bold]')
                console.print(
                    codeMessage(result.returncode, result.stdout),
                    style='red',
                    markup=False,
                )

    elapsed = datetime.now() - start
    console.print(
        f'{len(pulls) - failures} of {len(pulls)} pulls went as expected'
        f' after [bold]{elapsed}[/bold]',
    )
    return 1 if failures else 0


if __name__ == '__main__':
    parser = ArgumentParser(description=__doc__)
    parser.add_argument(
        'refs',
        nargs='*',
        metavar='REF',
        help='Full image references to pull (default: every case in cases.yaml)',
    )
    parser.add_argument(
        '--version',
        default=CONTAINERD_VERSIONS[-1],
        choices=CONTAINERD_VERSIONS,
        help='containerd version to run',
    )
    parser.add_argument(
        '--skip-install',
        action='store_true',
        help='Use the containerd already installed in the bin directory',
    )
    args = parser.parse_args()

    exit(main(args.version, not args.skip_install, args.refs))
