"""
Tests for the mBART assembler and its heads.

Run with: pytest tests/test_models/test_mbart.py -v
"""

import pytest
import torch
import transformers

from stackformer.models.config import MBartConfig
from stackformer.models.factory import from_pretrained
from stackformer.models.mbart import (
    MBartForCausalLM,
    MBartForConditionalGeneration,
    MBartForQuestionAnswering,
    MBartForSequenceClassification,
    MBartModel,
    shift_tokens_right,
)

VOCAB = 40
HIDDEN = 16


def tiny_config(**overrides) -> MBartConfig:
    options = dict(
        vocab_size=VOCAB,
        max_positions=32,
        hidden_size=HIDDEN,
        encoder_num_blocks=2,
        decoder_num_blocks=2,
        encoder_num_attention_heads=4,
        decoder_num_attention_heads=4,
        encoder_intermediate_size=32,
        decoder_intermediate_size=32,
        dropout_rate=0.0,
    )
    options.update(overrides)
    return MBartConfig(**options)


def tiny_hf_config(**overrides) -> transformers.MBartConfig:
    options = dict(
        vocab_size=VOCAB,
        max_position_embeddings=32,
        d_model=HIDDEN,
        encoder_layers=2,
        decoder_layers=2,
        encoder_attention_heads=4,
        decoder_attention_heads=4,
        encoder_ffn_dim=32,
        decoder_ffn_dim=32,
        scale_embedding=True,
    )
    options.update(overrides)
    return transformers.MBartConfig(**options)


@pytest.fixture
def inputs():
    torch.manual_seed(0)
    # Tokens 3.. are ordinary words; 2 is </s>, 1 is padding
    input_ids = torch.randint(3, VOCAB, (2, 7))
    input_ids[:, 5] = 2
    input_ids[0, 6] = 30
    input_ids[1, 6] = 1
    attention_mask = input_ids.ne(1).long()
    return input_ids, attention_mask


class TestShiftTokensRight:
    def test_language_id_moves_to_front(self):
        input_ids = torch.tensor([[5, 6, 2, 25, 1, 1], [7, 8, 9, 2, 26, 1]])
        shifted = shift_tokens_right(input_ids, pad_token_id=1)
        assert shifted.tolist() == [[25, 5, 6, 2, 25, 1], [26, 7, 8, 9, 2, 26]]

    def test_no_padding(self):
        shifted = shift_tokens_right(torch.tensor([[4, 2, 9]]), pad_token_id=1)
        assert shifted.tolist() == [[9, 4, 2]]


class TestMBartModel:
    def test_output_shapes(self, inputs):
        input_ids, attention_mask = inputs
        model = MBartModel(tiny_config()).eval()

        outputs = model(
            input_ids,
            attention_mask=attention_mask,
            output_hidden_states=True,
            output_attentions=True,
        )

        assert outputs.hidden_state.shape == (2, 7, HIDDEN)
        assert outputs.encoder_hidden_state.shape == (2, 7, HIDDEN)
        assert len(outputs.encoder_hidden_states) == 3
        assert len(outputs.decoder_hidden_states) == 3
        assert outputs.cross_attentions[0].shape == (2, 4, 7, 7)
        # Padding in the source is hidden from the decoder
        assert torch.all(outputs.cross_attentions[0][1, :, :, 6] == 0)

    def test_inputs_required(self):
        model = MBartModel(tiny_config())
        with pytest.raises(ValueError, match="input_ids"):
            model()
        with pytest.raises(ValueError, match="decoder_input_ids"):
            model(encoder_hidden_state=torch.randn(1, 3, HIDDEN))

    def test_precomputed_encoder_state(self, inputs):
        input_ids, attention_mask = inputs
        model = MBartModel(tiny_config()).eval()
        decoder_input_ids = shift_tokens_right(input_ids, 1)

        full = model(input_ids, attention_mask=attention_mask)
        reused = model(
            attention_mask=attention_mask,
            decoder_input_ids=decoder_input_ids,
            encoder_hidden_state=full.encoder_hidden_state,
        )

        assert torch.allclose(reused.hidden_state, full.hidden_state, atol=1e-6)
        assert reused.encoder_hidden_states is None

    def test_incremental_decoding_matches_full_pass(self, inputs):
        input_ids, attention_mask = inputs
        model = MBartModel(tiny_config()).eval()
        decoder_input_ids = torch.randint(3, VOCAB, (2, 5))

        full = model(
            input_ids, attention_mask=attention_mask, decoder_input_ids=decoder_input_ids
        )

        encoder_state = full.encoder_hidden_state
        cache = model.init_cache(2, 5, encoder_state)
        steps, caches = [], []
        for i in range(5):
            out = model(
                attention_mask=attention_mask,
                decoder_input_ids=decoder_input_ids[:, i : i + 1],
                encoder_hidden_state=encoder_state,
                cache=cache,
            )
            cache = out.cache
            steps.append(out.hidden_state)
            caches.append(cache)

        assert torch.allclose(torch.cat(steps, dim=1), full.hidden_state, atol=1e-5)
        assert cache.offset == 5
        # Cross-attention keys are projected once and reused afterwards
        first_cross = caches[0].blocks[0].cross_attention
        assert all(c.blocks[0].cross_attention.key is first_cross.key for c in caches[1:])

    def test_cache_rejects_other_encoder_length(self, inputs):
        input_ids, attention_mask = inputs
        model = MBartModel(tiny_config()).eval()
        cache = model.init_cache(2, 4, torch.zeros(2, 3, HIDDEN))

        with pytest.raises(ValueError, match="encoder_sequence_length"):
            model(
                input_ids,
                attention_mask=attention_mask,
                decoder_input_ids=input_ids[:, :1],
                cache=cache,
            )


class TestMBartHeads:
    def test_conditional_generation_ties_embeddings(self, inputs):
        input_ids, attention_mask = inputs
        model = MBartForConditionalGeneration(tiny_config()).eval()
        with torch.no_grad():
            model.final_logits_bias[0, 4] = 100.0

        outputs = model(input_ids, attention_mask=attention_mask)

        assert outputs.logits.shape == (2, 7, VOCAB)
        assert torch.all(outputs.logits.argmax(dim=-1) == 4)
        expected = outputs.hidden_state @ model.model.shared.weight.T
        assert torch.allclose(outputs.logits[..., :4], expected[..., :4], atol=1e-5)

    def test_sequence_classification_uses_last_eos(self, inputs):
        input_ids, attention_mask = inputs
        model = MBartForSequenceClassification(tiny_config(num_labels=3)).eval()

        outputs = model(input_ids, attention_mask=attention_mask)

        assert outputs.logits.shape == (2, 3)
        expected = model.classification_head(outputs.hidden_state[:, 5])
        assert torch.allclose(outputs.logits, expected)

    def test_question_answering(self, inputs):
        input_ids, attention_mask = inputs
        outputs = MBartForQuestionAnswering(tiny_config()).eval()(
            input_ids, attention_mask=attention_mask
        )
        assert outputs.start_logits.shape == (2, 7)
        assert outputs.end_logits.shape == (2, 7)

    def test_causal_lm_incremental_decoding(self):
        torch.manual_seed(5)
        model = MBartForCausalLM(tiny_config()).eval()
        input_ids = torch.randint(3, VOCAB, (1, 6))

        full = model(input_ids).logits

        cache = model.init_cache(1, 6)
        prompt = model(input_ids[:, :4], cache=cache)
        step = model(input_ids[:, 4:5], cache=prompt.cache)
        last = model(input_ids[:, 5:], cache=step.cache)

        assert torch.allclose(prompt.logits, full[:, :4], atol=1e-5)
        assert torch.allclose(step.logits, full[:, 4:5], atol=1e-5)
        assert torch.allclose(last.logits, full[:, 5:], atol=1e-5)


class TestTransformersParity:
    def test_base_model(self, inputs):
        input_ids, attention_mask = inputs
        torch.manual_seed(1)
        reference = transformers.MBartModel(tiny_hf_config()).eval()
        model = from_pretrained(reference)

        with torch.no_grad():
            expected = reference(input_ids=input_ids, attention_mask=attention_mask)
            actual = model(input_ids, attention_mask=attention_mask)

        assert isinstance(model, MBartModel)
        assert torch.allclose(
            actual.encoder_hidden_state, expected.encoder_last_hidden_state, atol=1e-5
        )
        assert torch.allclose(actual.hidden_state, expected.last_hidden_state, atol=1e-5)

    def test_conditional_generation(self, inputs):
        input_ids, attention_mask = inputs
        torch.manual_seed(2)
        reference = transformers.MBartForConditionalGeneration(tiny_hf_config()).eval()
        with torch.no_grad():
            reference.final_logits_bias.normal_()
        model = from_pretrained(reference)
        decoder_input_ids = torch.randint(3, VOCAB, (2, 4))

        with torch.no_grad():
            expected = reference(
                input_ids=input_ids,
                attention_mask=attention_mask,
                decoder_input_ids=decoder_input_ids,
            ).logits
            actual = model(
                input_ids, attention_mask=attention_mask, decoder_input_ids=decoder_input_ids
            ).logits

        assert torch.allclose(actual, expected, atol=1e-5)

    def test_sequence_classification(self, inputs):
        input_ids, attention_mask = inputs
        torch.manual_seed(3)
        reference = transformers.MBartForSequenceClassification(
            tiny_hf_config(num_labels=3)
        ).eval()
        model = from_pretrained(reference)

        with torch.no_grad():
            expected = reference(input_ids=input_ids, attention_mask=attention_mask).logits
            actual = model(input_ids, attention_mask=attention_mask).logits

        assert torch.allclose(actual, expected, atol=1e-5)
