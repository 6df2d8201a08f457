"""NodeSet object model, pod identity, deletion ordering, claim ownership, pod and Slurm node control."""

__version__ = "0.4.0"

__all__ = ["identity", "model", "ordering", "ownership", "podcontrol", "slurmcontrol"]