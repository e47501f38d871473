import pytest

from fedrun.contracts import MappingIncompleteError
from fedrun.mapping import is_mapped, resolve_mappings
from fedrun.models import Consortium, PipelineStep

from tests.helpers.documents import make_consortium, make_step

pytestmark = [pytest.mark.unit, pytest.mark.mapping]


def covariates(step):
    return step.input_map["covariates"]


class TestValidationPass:

    def test_lists_collections_used(self):
        resolution = resolve_mappings(Consortium.model_validate(make_consortium()))

        assert resolution.collections_used == [{"groupId": "grp-1", "collectionId": "col-1"}]
        assert resolution.collection_ids() == ["col-1"]

    def test_does_not_touch_file_contents(self):
        resolution = resolve_mappings(Consortium.model_validate(make_consortium()))

        assert covariates(resolution.steps[0]).value == [[], [], []]
        assert covariates(resolution.steps[0]).owner_mappings is None

    def test_non_mapped_inputs_pass_through(self):
        resolution = resolve_mappings(Consortium.model_validate(make_consortium()))
        assert resolution.steps[0].input_map["lambda"].value == 0.5

    def test_missing_step_io_is_incomplete(self):
        consortium = Consortium.model_validate(make_consortium(mapped=False))

        with pytest.raises(MappingIncompleteError) as excinfo:
            resolve_mappings(consortium)

        assert "Brain Study" in excinfo.value.message
        assert "complete variable mapping" in excinfo.value.message

    def test_entry_without_collection_is_incomplete(self):
        doc = make_consortium()
        doc["stepIO"] = [{"covariates": [{"groupId": "grp-1", "column": "age"}]}]

        with pytest.raises(MappingIncompleteError):
            resolve_mappings(Consortium.model_validate(doc))

    def test_second_mapping_missing_is_incomplete(self):
        doc = make_consortium()
        doc["pipelineSteps"] = [make_step(owner_mappings=[
            {"source": "file", "type": "number", "value": "age"},
            {"source": "file", "type": "string", "value": "sex"},
        ])]

        with pytest.raises(MappingIncompleteError):
            resolve_mappings(Consortium.model_validate(doc))

    def test_is_mapped(self):
        assert is_mapped(Consortium.model_validate(make_consortium())) is True
        assert is_mapped(Consortium.model_validate(make_consortium(mapped=False))) is False


class TestMaterializingPass:

    def test_builds_value_label_type_lanes(self):
        consortium = Consortium.model_validate(make_consortium())
        resolution = resolve_mappings(consortium, {"grp-1": ["/data/a.csv", "/data/b.csv"]})

        assert covariates(resolution.steps[0]).value == [
            [["/data/a.csv", "/data/b.csv"]],
            ["age"],
            ["number"],
        ]

    def test_meta_file_group_passes_the_file(self):
        consortium = Consortium.model_validate(make_consortium())
        resolution = resolve_mappings(consortium, {"grp-1": "/data/covariates.csv"})

        assert covariates(resolution.steps[0]).value[0] == ["/data/covariates.csv"]

    def test_resolution_is_idempotent(self):
        consortium = Consortium.model_validate(make_consortium())
        files = {"grp-1": ["/data/a.csv"]}

        first = resolve_mappings(consortium, files)
        second = resolve_mappings(consortium, files)

        assert [s.to_document() for s in first.steps] == [s.to_document() for s in second.steps]

    def test_declared_steps_are_not_mutated(self):
        consortium = Consortium.model_validate(make_consortium())
        resolve_mappings(consortium, {"grp-1": ["/data/a.csv"]})

        assert covariates(consortium.pipeline_steps[0]).owner_mappings is not None

    def test_resolves_given_steps_against_consortium_mapping(self):
        consortium = Consortium.model_validate(make_consortium())
        snapshot_steps = [PipelineStep.model_validate(make_step(images=("img-z",)))]

        resolution = resolve_mappings(consortium, {"grp-1": ["/x"]}, snapshot_steps)

        assert resolution.steps[0].computations[0].docker_image == "img-z"
        assert covariates(resolution.steps[0]).value[0] == [["/x"]]

    def test_freesurfer_addressed_by_group(self):
        doc = make_consortium()
        doc["pipelineSteps"][0]["inputMap"]["regions"] = {"ownerMappings": [
            {"source": "owner", "type": "FreeSurfer", "value": ["Left-Hippocampus"]},
        ]}
        doc["stepIO"][0]["regions"] = [{"groupId": "grp-fs"}]
        consortium = Consortium.model_validate(doc)

        resolution = resolve_mappings(consortium, {"grp-1": ["/a"], "grp-fs": "/fs/aseg.csv"})

        assert resolution.steps[0].input_map["regions"].value == [
            ["/fs/aseg.csv"], [["Left-Hippocampus"]], ["FreeSurfer"],
        ]
        # Not a file mapping, so no collection is recorded for it
        assert resolution.collection_ids() == ["col-1"]

    def test_shared_collection_recorded_once(self):
        doc = make_consortium()
        doc["pipelineSteps"] = [make_step(owner_mappings=[
            {"source": "file", "type": "number", "value": "age"},
            {"source": "file", "type": "number", "value": "iq"},
        ])]
        entry = {"groupId": "grp-1", "collectionId": "col-1", "column": "age"}
        doc["stepIO"] = [{"covariates": [entry, dict(entry, column="iq")]}]

        resolution = resolve_mappings(Consortium.model_validate(doc), {"grp-1": ["/a"]})

        assert resolution.collections_used == [{"groupId": "grp-1", "collectionId": "col-1"}]
        assert covariates(resolution.steps[0]).value == [[["/a"], ["/a"]], ["age", "iq"], ["number", "number"]]
