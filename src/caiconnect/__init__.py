"""caiconnect - Remote-SSH sessions on Cloudera AI through cdswctl

Philosophy:
- Ruthless simplicity
- Brick architecture (self-contained modules)
- The filesystem is the only channel between controller and supervisor
- Fail fast with helpful guidance

The caiconnect CLI starts a detached supervisor that owns a `cdswctl
ssh-endpoint` process, waits for the forwarded SSH port, and writes a
`Host cml` block into ~/.ssh/config so VS Code Remote-SSH can attach.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
