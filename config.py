from dataclasses import dataclass, field, fields, asdict
from typing import Dict, List
import yaml
from pathlib import Path

@dataclass
class FeatureExtractionConfig:
    """Configuration for feature extraction"""
    backend: str = "histogram"  # Options: histogram, clip
    model_name: str = "openai/clip-vit-base-patch32"
    use_gpu: bool = False
    dimension: int = 128  # Fixed per deployment; must match the extractor
    histogram_bins: List[int] = field(default_factory=lambda: [8, 4, 4])
    max_colors: int = 5
    max_image_dimension: int = 1024


@dataclass
class VectorIndexConfig:
    """Configuration for the similarity index"""
    exact_threshold: int = 50000  # Below this, queries are an exact scan
    hnsw_m: int = 32
    ef_construction: int = 200
    ef_search: int = 128
    candidate_multiplier: int = 4
    max_candidates: int = 4096
    rebuild_fraction: float = 0.1


@dataclass
class ColorIndexConfig:
    """Configuration for the dominant color index"""
    quantization_step: int = 32  # 8 levels per RGB channel
    max_candidates: int = 10000
    settle_rings: int = 1


@dataclass
class SearchConfig:
    """Limits applied to public queries"""
    max_page_size: int = 100
    max_results: int = 100


@dataclass
class AuthConfig:
    """Bearer tokens accepted by the API, mapped to user ids"""
    tokens: Dict[str, str] = field(default_factory=dict)


@dataclass
class SystemConfig:
    """System-wide configuration"""
    n_workers: int = 4
    data_dir: str = "data"
    database_path: str = "data/images.db"
    upload_dir: str = "data/uploads"
    thumbnail_dir: str = "data/thumbnails"
    thumbnail_size: int = 300
    max_upload_mb: float = 50.0
    log_level: str = "INFO"
    log_dir: str = "logs"
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])

    # Feature extraction
    feature_extraction: FeatureExtractionConfig = field(
        default_factory=FeatureExtractionConfig
    )

    # Similarity index
    vector_index: VectorIndexConfig = field(
        default_factory=VectorIndexConfig
    )

    # Color index
    color_index: ColorIndexConfig = field(
        default_factory=ColorIndexConfig
    )

    search: SearchConfig = field(default_factory=SearchConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)

    SECTIONS = {
        'feature_extraction': FeatureExtractionConfig,
        'vector_index': VectorIndexConfig,
        'color_index': ColorIndexConfig,
        'search': SearchConfig,
        'auth': AuthConfig,
    }

    def save(self, path: str = "config.yaml"):
        """Save configuration to YAML file"""
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            yaml.safe_dump(asdict(self), f, default_flow_style=False, indent=2)

    @classmethod
    def load(cls, path: str = "config.yaml") -> 'SystemConfig':
        """Load configuration from YAML file; missing file or keys keep defaults"""
        if not Path(path).exists():
            return cls()  # Return default config

        with open(path, 'r') as f:
            config_dict = yaml.safe_load(f) or {}

        config = cls()

        for item in fields(cls):
            if item.name not in config_dict:
                continue
            value = config_dict[item.name]
            section_cls = cls.SECTIONS.get(item.name)
            if section_cls is None:
                setattr(config, item.name, value)
                continue
            defaults = getattr(config, item.name)
            known = {f.name for f in fields(section_cls)}
            merged = {
                name: (value or {}).get(name, getattr(defaults, name))
                for name in known
            }
            setattr(config, item.name, section_cls(**merged))

        return config
