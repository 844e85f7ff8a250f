"""
Accelerator Resource Manager
============================

Owns every device-resident object of one problem: image samplers, optional
depth samplers (geometric consistency), the packed camera array and the
per-pixel working buffers (hypotheses, costs, view-selection bitmasks, random
state, planar prior). Each allocation is recorded in a ledger and released
exactly once by ``close()``, which also runs when the ``with`` block exits
early. Any accelerator failure surfaces as ``DeviceError``.

Example:
    >>> with DeviceResources(config) as resources:
    ...     resources.allocate(images, cameras)
    ...     result = PropagationEngine(config, resources).run(PropagationStage.PHOTOMETRIC)
"""

from collections import OrderedDict
from typing import Dict, List, Optional, Sequence

import numpy as np
import torch

from ..config import PatchMatchConfig
from ..core.camera import Camera
from ..core.structures import HypothesisInit, PriorField, PropagationResult
from ..errors import DeviceError, InputError, call_site
from ..logger import get_logger
from .buffers import HypothesisField
from .random import PixelRandomState
from .samplers import DeviceGuard, TextureSampler


MAX_VIEWS = 32  # view-selection bitmask width


class DeviceResources:
    """Allocate / populate / release device state for one problem"""

    def __init__(self, config: Optional[PatchMatchConfig] = None):
        self.config = config or PatchMatchConfig()
        self.device = self.config.resolve_device()
        self.logger = get_logger("resources")

        self.cameras_host: List[Camera] = []
        self.images: List[TextureSampler] = []
        self.depths: List[TextureSampler] = []
        self.depth_valid: List[bool] = []
        self.cameras: Optional[torch.Tensor] = None

        self.field: Optional[HypothesisField] = None
        self.selected_views: Optional[torch.Tensor] = None
        self.confidence: Optional[torch.Tensor] = None
        self.rand_states: Optional[PixelRandomState] = None
        self.auxiliary_cost: Optional[torch.Tensor] = None
        self.prior_planes: Optional[torch.Tensor] = None
        self.plane_masks: Optional[torch.Tensor] = None

        self.width = 0
        self.height = 0
        self.hypotheses_loaded = False
        self._ledger: Dict[str, int] = OrderedDict()
        self._closed = False

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self) -> "DeviceResources":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    @property
    def allocated(self) -> bool:
        return self.field is not None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def num_images(self) -> int:
        return len(self.images)

    @property
    def num_sources(self) -> int:
        return max(0, len(self.images) - 1)

    @property
    def has_depth_samplers(self) -> bool:
        return len(self.depths) > 0

    @property
    def has_prior(self) -> bool:
        return self.plane_masks is not None

    @property
    def allocated_bytes(self) -> int:
        return sum(self._ledger.values())

    @property
    def ledger(self) -> Dict[str, int]:
        return dict(self._ledger)

    def _track(self, name: str, nbytes: int):
        if name in self._ledger:
            raise DeviceError(f"duplicate allocation '{name}'", location=call_site(2))
        self._ledger[name] = int(nbytes)

    def _untrack(self, name: str):
        self._ledger.pop(name, None)

    def _require_allocated(self):
        if self._closed:
            raise DeviceError("resources used after close()", location=call_site(3))
        if not self.allocated:
            raise DeviceError("resources used before allocate()", location=call_site(3))

    @staticmethod
    def _tensor_bytes(tensor: torch.Tensor) -> int:
        return tensor.element_size() * tensor.nelement()

    def _upload_map(self, array: np.ndarray, name: str) -> TextureSampler:
        with DeviceGuard(f"upload {name}"):
            tensor = torch.from_numpy(np.ascontiguousarray(array, dtype=np.float32)).to(self.device)
        sampler = TextureSampler(tensor, name=name)
        self._track(name, sampler.nbytes)
        return sampler

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def allocate(self, images: Sequence[np.ndarray], cameras: Sequence[Camera],
                 depths: Optional[Sequence[Optional[np.ndarray]]] = None):
        """
        Upload imagery and cameras and allocate the per-pixel buffers.

        Any previous allocation (e.g. from a coarser level) is released
        first, so buffers always match the current reference resolution.

        Args:
            images: Reference image first, then sources; (H, W) float arrays
            cameras: One camera per image, sized to its image
            depths: Optional per-image depth maps for geometric consistency;
                    ``None`` entries disable the geometric term for that view
        """
        if self._closed:
            raise DeviceError("allocate() after close()", location=call_site(2))
        if len(images) != len(cameras) or len(images) < 2:
            raise InputError(
                f"need a reference and at least one source with cameras, "
                f"got {len(images)} images / {len(cameras)} cameras"
            )
        if len(images) > MAX_VIEWS + 1:
            raise InputError(f"at most {MAX_VIEWS} source views are supported")
        if self.allocated:
            self.release()

        ref = cameras[0]
        self.height, self.width = np.asarray(images[0]).shape[:2]
        if (ref.width, ref.height) != (self.width, self.height):
            raise InputError(
                f"reference camera is {ref.width}x{ref.height} but image is "
                f"{self.width}x{self.height}"
            )

        self.cameras_host = list(cameras)
        self.images = [self._upload_map(img, f"image[{i}]") for i, img in enumerate(images)]

        packed = np.stack([cam.pack() for cam in cameras], axis=0)
        with DeviceGuard("upload camera array"):
            self.cameras = torch.from_numpy(packed).to(self.device)
        self._track("cameras", self._tensor_bytes(self.cameras))

        with DeviceGuard("allocate per-pixel buffers"):
            num_pixels = self.width * self.height
            self.field = HypothesisField(self.height, self.width, self.device, self.config.max_cost)
            self.selected_views = torch.zeros(num_pixels, dtype=torch.int64, device=self.device)
            self.confidence = torch.zeros(num_pixels, dtype=torch.float32, device=self.device)
            self.rand_states = PixelRandomState(num_pixels, self.config.seed, self.device)
        self._track("hypotheses", self.field.nbytes)
        self._track("selected_views", self._tensor_bytes(self.selected_views))
        self._track("confidence", self._tensor_bytes(self.confidence))
        self._track("rand_states", self.rand_states.nbytes)

        if depths is not None:
            self._allocate_depths(depths)

        self.hypotheses_loaded = False
        self.logger.debug(
            f"Allocated {len(self.images)} image samplers "
            f"({self.width}x{self.height}), {self.allocated_bytes / 1e6:.1f} MB on {self.device}"
        )

    def _allocate_depths(self, depths: Sequence[Optional[np.ndarray]]):
        if len(depths) != len(self.images):
            raise InputError(f"expected {len(self.images)} depth maps, got {len(depths)}")
        self.depths = []
        self.depth_valid = []
        for i, depth in enumerate(depths):
            if depth is None:
                height = self.cameras_host[i].height
                width = self.cameras_host[i].width
                depth = np.zeros((height, width), dtype=np.float32)
                self.depth_valid.append(False)
            else:
                self.depth_valid.append(True)
            self.depths.append(self._upload_map(depth, f"depth[{i}]"))

    # ------------------------------------------------------------------
    # Population
    # ------------------------------------------------------------------

    def upload_hypotheses(self, init: HypothesisInit):
        """
        Stage a warm start (reloaded or upsampled hypotheses).

        The engine validates and scores them at the start of its next run.
        """
        self._require_allocated()
        if tuple(init.shape) != (self.height, self.width):
            raise InputError(
                f"initial hypotheses are {init.shape[1]}x{init.shape[0]}, "
                f"reference is {self.width}x{self.height}"
            )
        num_pixels = self.width * self.height
        with DeviceGuard("upload hypotheses"):
            depth = torch.from_numpy(np.ascontiguousarray(init.depth, dtype=np.float32))
            normal = torch.from_numpy(np.ascontiguousarray(init.normal, dtype=np.float32))
            self.field.planes[:, :3] = normal.reshape(num_pixels, 3).to(self.device)
            self.field.planes[:, 3] = depth.reshape(num_pixels).to(self.device)

            self._untrack("auxiliary_cost")
            self.auxiliary_cost = None
            if init.auxiliary_cost is not None:
                aux = np.ascontiguousarray(init.auxiliary_cost, dtype=np.float32).reshape(num_pixels)
                self.auxiliary_cost = torch.from_numpy(aux).to(self.device)
                self._track("auxiliary_cost", self._tensor_bytes(self.auxiliary_cost))
        self.hypotheses_loaded = True

    def upload_prior(self, prior: PriorField):
        """Upload the rasterized planar prior (replacing any previous one)"""
        self._require_allocated()
        if prior.mask.shape != (self.height, self.width):
            raise InputError(f"prior mask shape {prior.mask.shape} does not match reference")
        self.release_prior()
        num_pixels = self.width * self.height
        with DeviceGuard("upload planar prior"):
            planes = np.ascontiguousarray(prior.planes, dtype=np.float32).reshape(num_pixels, 4)
            masks = np.ascontiguousarray(prior.mask, dtype=np.int64).reshape(num_pixels)
            self.prior_planes = torch.from_numpy(planes).to(self.device)
            self.plane_masks = torch.from_numpy(masks).to(self.device)
        self._track("prior_planes", self._tensor_bytes(self.prior_planes))
        self._track("plane_masks", self._tensor_bytes(self.plane_masks))

    # ------------------------------------------------------------------
    # Readback
    # ------------------------------------------------------------------

    def download(self) -> PropagationResult:
        """Copy the hypothesis, cost and auxiliary fields back to the host"""
        self._require_allocated()
        with DeviceGuard("download results"):
            if self.device.type == 'cuda':
                torch.cuda.synchronize(self.device)
            planes = self.field.planes.cpu().numpy()
            costs = self.field.costs.cpu().numpy()
            confidence = self.confidence.cpu().numpy()
            views = self.selected_views.cpu().numpy()
            texture = self.images[0].data.cpu().numpy()

        shape = (self.height, self.width)
        return PropagationResult(
            depth=planes[:, 3].reshape(shape).copy(),
            normal=planes[:, :3].reshape(shape + (3,)).copy(),
            cost=costs.reshape(shape).copy(),
            confidence=confidence.reshape(shape).copy(),
            selected_views=views.reshape(shape).astype(np.uint32),
            texture=texture.copy(),
        )

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def release_prior(self):
        if self.prior_planes is not None:
            self.prior_planes = None
            self._untrack("prior_planes")
        if self.plane_masks is not None:
            self.plane_masks = None
            self._untrack("plane_masks")

    def release(self):
        """Free every device allocation; the object can be allocated again"""
        released = self.allocated_bytes
        for sampler in self.images + self.depths:
            sampler.release()
            self._untrack(sampler.name)
        self.images = []
        self.depths = []
        self.depth_valid = []

        for name in ("cameras", "hypotheses", "selected_views", "confidence",
                     "rand_states", "auxiliary_cost"):
            self._untrack(name)
        self.cameras = None
        self.field = None
        self.selected_views = None
        self.confidence = None
        self.rand_states = None
        self.auxiliary_cost = None
        self.release_prior()

        self.cameras_host = []
        self.hypotheses_loaded = False
        if self.device.type == 'cuda':
            torch.cuda.empty_cache()
        if released:
            self.logger.debug(f"Released {released / 1e6:.1f} MB of device memory")

    def close(self):
        """Release everything; further use raises ``DeviceError``"""
        if self._closed:
            return
        self.release()
        self._closed = True
