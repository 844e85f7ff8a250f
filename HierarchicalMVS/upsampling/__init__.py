from .jbu import JointBilateralUpsampler, nearest_upsample, upsample_scale

__all__ = ['JointBilateralUpsampler', 'nearest_upsample', 'upsample_scale']
