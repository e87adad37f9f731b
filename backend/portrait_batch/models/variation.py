"""Variation targets: one attribute combination a batch item generates."""

from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class BreedCoatTarget(BaseModel):
    kind: Literal["breed_coat"] = "breed_coat"
    breed_id: str = Field(min_length=1)
    coat_id: str = Field(min_length=1)


class OutfitTarget(BaseModel):
    kind: Literal["outfit"] = "outfit"
    outfit_id: str = Field(min_length=1)


class FormatTarget(BaseModel):
    kind: Literal["format"] = "format"
    format_id: str = Field(min_length=1)


VariationTarget = Annotated[
    Union[BreedCoatTarget, OutfitTarget, FormatTarget],
    Field(discriminator="kind"),
]


NonEmptyId = Annotated[str, Field(min_length=1)]


class BreedCoatPair(BaseModel):
    breed_id: str = Field(min_length=1)
    coat_id: str = Field(min_length=1)


class VariationSets(BaseModel):
    """Requested variation categories, in processing order."""

    breed_coats: List[BreedCoatPair] = Field(default_factory=list)
    outfits: List[NonEmptyId] = Field(default_factory=list)
    formats: List[NonEmptyId] = Field(default_factory=list)

    def to_targets(self) -> List[VariationTarget]:
        targets: List[VariationTarget] = []
        targets.extend(BreedCoatTarget(breed_id=p.breed_id, coat_id=p.coat_id) for p in self.breed_coats)
        targets.extend(OutfitTarget(outfit_id=o) for o in self.outfits)
        targets.extend(FormatTarget(format_id=f) for f in self.formats)
        return targets


class SourceAttributes(BaseModel):
    """Attributes of the source image the variations are derived from."""

    breed_id: Optional[str] = None
    coat_id: Optional[str] = None
    theme_id: Optional[str] = None
    style_id: Optional[str] = None
    format_id: Optional[str] = None


def describe_target(target: VariationTarget, labels: Optional[Dict[str, str]] = None) -> str:
    """Human-readable name for a target, using display labels when known."""
    labels = labels or {}
    if isinstance(target, BreedCoatTarget):
        breed = labels.get(target.breed_id, target.breed_id)
        coat = labels.get(target.coat_id, target.coat_id)
        return f"{breed} with {coat} coat"
    if isinstance(target, OutfitTarget):
        return f"{labels.get(target.outfit_id, target.outfit_id)} outfit"
    return f"{labels.get(target.format_id, target.format_id)} format"
