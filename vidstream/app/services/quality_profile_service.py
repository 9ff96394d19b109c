"""
Quality Profile Catalog

Static rendition ladder and the rule for picking the profiles that apply to a
given source resolution.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

H264_CODEC_STRINGS = {
    "baseline": "avc1.42E01E",
    "main": "avc1.4D401F",
    "high": "avc1.640028",
}
AUDIO_CODEC_STRING = "mp4a.40.2"


@dataclass(frozen=True)
class QualityProfile:
    """Encoding parameters for one rendition"""
    name: str
    width: int
    height: int
    video_bitrate: int  # kbps
    audio_bitrate: int  # kbps
    fps: int
    codec: str
    preset: str
    profile: str
    level: str
    pixel_format: str
    gop_size: int
    b_frames: int
    keyint_min: int
    keyint_max: int

    @property
    def bitrate(self) -> int:
        """Total bitrate in kbps."""
        return self.video_bitrate + self.audio_bitrate

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"

    @property
    def video_codec(self) -> str:
        """RFC 6381 codec string of the video stream alone."""
        if self.codec == "libx264":
            return H264_CODEC_STRINGS.get(self.profile, "avc1.640028")
        return "hev1.1.6.L93.B0"

    @property
    def codecs(self) -> str:
        """RFC 6381 codecs string for manifests."""
        return f"{self.video_codec},{AUDIO_CODEC_STRING}"

    def fits(self, width: int, height: int) -> bool:
        return self.width <= width and self.height <= height

    def __lt__(self, other: "QualityProfile") -> bool:
        return self.bitrate < other.bitrate


QUALITY_PROFILES: Dict[str, QualityProfile] = {
    "240p": QualityProfile(
        name="240p", width=426, height=240, video_bitrate=400, audio_bitrate=64, fps=24,
        codec="libx264", preset="fast", profile="baseline", level="3.0", pixel_format="yuv420p",
        gop_size=48, b_frames=0, keyint_min=24, keyint_max=48,
    ),
    "360p": QualityProfile(
        name="360p", width=640, height=360, video_bitrate=800, audio_bitrate=96, fps=24,
        codec="libx264", preset="fast", profile="main", level="3.1", pixel_format="yuv420p",
        gop_size=48, b_frames=2, keyint_min=24, keyint_max=48,
    ),
    "480p": QualityProfile(
        name="480p", width=854, height=480, video_bitrate=1200, audio_bitrate=128, fps=30,
        codec="libx264", preset="medium", profile="main", level="3.1", pixel_format="yuv420p",
        gop_size=60, b_frames=3, keyint_min=30, keyint_max=60,
    ),
    "720p": QualityProfile(
        name="720p", width=1280, height=720, video_bitrate=2500, audio_bitrate=128, fps=30,
        codec="libx264", preset="medium", profile="high", level="4.0", pixel_format="yuv420p",
        gop_size=60, b_frames=3, keyint_min=30, keyint_max=60,
    ),
    "1080p": QualityProfile(
        name="1080p", width=1920, height=1080, video_bitrate=5000, audio_bitrate=192, fps=30,
        codec="libx264", preset="medium", profile="high", level="4.0", pixel_format="yuv420p",
        gop_size=60, b_frames=3, keyint_min=30, keyint_max=60,
    ),
    "1440p": QualityProfile(
        name="1440p", width=2560, height=1440, video_bitrate=8000, audio_bitrate=192, fps=30,
        codec="libx265", preset="slow", profile="main", level="5.0", pixel_format="yuv420p",
        gop_size=60, b_frames=4, keyint_min=30, keyint_max=60,
    ),
    "4K": QualityProfile(
        name="4K", width=3840, height=2160, video_bitrate=15000, audio_bitrate=256, fps=30,
        codec="libx265", preset="slow", profile="main", level="5.1", pixel_format="yuv420p",
        gop_size=60, b_frames=4, keyint_min=30, keyint_max=60,
    ),
}


class QualityProfileCatalog:
    """Lookup and selection over a fixed set of quality profiles."""

    def __init__(self, profiles: Optional[Iterable[QualityProfile]] = None):
        source = list(profiles) if profiles is not None else list(QUALITY_PROFILES.values())
        self._profiles: Dict[str, QualityProfile] = {p.name: p for p in source}

    def get(self, name: str) -> Optional[QualityProfile]:
        return self._profiles.get(name)

    def require(self, name: str) -> QualityProfile:
        profile = self._profiles.get(name)
        if profile is None:
            raise KeyError(f"Unknown quality profile: {name}")
        return profile

    def names(self) -> List[str]:
        return [p.name for p in self.all_profiles()]

    def all_profiles(self) -> List[QualityProfile]:
        return sorted(self._profiles.values(), key=lambda p: p.bitrate)

    def sort_by_bitrate(self, names: Iterable[str]) -> List[QualityProfile]:
        return sorted((self.require(n) for n in names), key=lambda p: p.bitrate)

    def applicable_profiles(self, source_width: int, source_height: int,
                            requested_names: Optional[Iterable[str]] = None) -> List[QualityProfile]:
        """
        Profiles that fit within the source resolution, ascending by bitrate.

        When ``requested_names`` is given the fitting set is intersected with it.
        If nothing survives, the highest-resolution fitting profile is used so
        every source that fits at least one profile yields a non-empty list.
        """
        fitting = [p for p in self._profiles.values() if p.fits(source_width, source_height)]
        if not fitting:
            return []

        selected = fitting
        if requested_names is not None:
            wanted = set(requested_names)
            selected = [p for p in fitting if p.name in wanted]

        if not selected:
            selected = [max(fitting, key=lambda p: (p.width * p.height, p.bitrate))]

        return sorted(selected, key=lambda p: p.bitrate)

    def capped(self, profiles: Iterable[QualityProfile], max_height: Optional[int]) -> List[QualityProfile]:
        """Profiles no taller than ``max_height``, ascending by bitrate."""
        ordered = sorted(profiles, key=lambda p: p.bitrate)
        if max_height is None:
            return ordered
        return [p for p in ordered if p.height <= max_height]


_default_catalog: Optional[QualityProfileCatalog] = None


def get_quality_profile_catalog() -> QualityProfileCatalog:
    global _default_catalog
    if _default_catalog is None:
        _default_catalog = QualityProfileCatalog()
    return _default_catalog
