"""Device selection."""

import torch


def get_device(device: str | torch.device = "auto") -> torch.device:
    """Resolve a device setting.

    Args:
        device: "auto" picks CUDA, then MPS, then CPU. Anything else is
            passed to torch.device, e.g. "cpu" or "cuda:1".

    Returns:
        torch.device for the selected device.
    """
    if isinstance(device, torch.device):
        return device
    if device != "auto":
        return torch.device(device)

    if torch.cuda.is_available():
        return torch.device("cuda")
    if torch.backends.mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")
