from upgrades.artifacts import ImplementationArtifact
from upgrades.layout import LayoutDescriptor, describe


def _continue() -> None:
    """Asks the user to continue."""
    answer = input("Continue Y/N? ")
    if answer.lower().strip() == "n":
        print("Aborting upgrade!")
        exit(-1)


def _confirm_upgrade(proxy: str, artifact: ImplementationArtifact) -> None:
    """Asks the user to confirm repointing a single proxy."""
    answer = input(f"Upgrade proxy {proxy} to {artifact.identifier} Y/N? ")
    if answer.lower().strip() == "n":
        print("Aborting upgrade!")
        exit(-1)


def _confirm_layout(
    old_layout: LayoutDescriptor, new_layout: LayoutDescriptor, proxy: str, artifact
) -> None:
    """Shows the storage variables an upgrade appends and asks for confirmation."""
    appended = LayoutDescriptor(new_layout.entries[len(old_layout) :])
    if len(appended) == 0:
        print(f"\n(i) {artifact.identifier} adds no storage variables")
    else:
        print(f"\nStorage variables appended by {artifact.identifier}")
        for line in describe(appended):
            print(f"\t{line}")
    _confirm_upgrade(proxy, artifact)
