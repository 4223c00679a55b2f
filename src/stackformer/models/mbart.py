"""
mBART encoder-decoder assembled from the shared block stack.

Contains:
- shift_tokens_right: default decoder inputs from the encoder inputs
- MBartEncoder / MBartDecoder: learned positions (offset 2), embedding layer
  norm, norm_first blocks and a final layer norm
- MBartModel: shared token embedding + encoder + decoder with incremental decoding
- Heads: conditional generation, sequence classification, question answering
  and a decoder-only causal LM

Token embeddings live outside the encoder and decoder so that a single table
is shared by both and by the tied language modeling head.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from .blocks import TransformerBlocks
from .cache import DecoderCache, get_cache_offset, init_cache
from .config import MBartConfig
from .positional_encoding import LearnedPositionalEncoding, default_position_ids

POSITION_OFFSET = 2


@dataclass
class MBartStackOutput:
    hidden_state: torch.Tensor
    hidden_states: Optional[Tuple[torch.Tensor, ...]] = None
    attentions: Optional[Tuple[torch.Tensor, ...]] = None
    cross_attentions: Optional[Tuple[Optional[torch.Tensor], ...]] = None
    cache: Optional[DecoderCache] = None


@dataclass
class Seq2SeqOutput:
    hidden_state: torch.Tensor
    cache: Optional[DecoderCache] = None
    encoder_hidden_state: Optional[torch.Tensor] = None
    decoder_hidden_states: Optional[Tuple[torch.Tensor, ...]] = None
    decoder_attentions: Optional[Tuple[torch.Tensor, ...]] = None
    cross_attentions: Optional[Tuple[Optional[torch.Tensor], ...]] = None
    encoder_hidden_states: Optional[Tuple[torch.Tensor, ...]] = None
    encoder_attentions: Optional[Tuple[torch.Tensor, ...]] = None


@dataclass
class Seq2SeqHeadOutput(Seq2SeqOutput):
    logits: Optional[torch.Tensor] = None
    start_logits: Optional[torch.Tensor] = None
    end_logits: Optional[torch.Tensor] = None


@dataclass
class CausalLMOutput:
    logits: torch.Tensor
    cache: Optional[DecoderCache] = None
    hidden_states: Optional[Tuple[torch.Tensor, ...]] = None
    attentions: Optional[Tuple[torch.Tensor, ...]] = None
    cross_attentions: Optional[Tuple[Optional[torch.Tensor], ...]] = None


def shift_tokens_right(input_ids: torch.Tensor, pad_token_id: int) -> torch.Tensor:
    """
    Decoder inputs for mBART: the last non-padding token of every row (the
    language id) becomes the start token and the rest is shifted right by one.
    """
    last_index = (input_ids.ne(pad_token_id).sum(dim=1) - 1).clamp(min=0).unsqueeze(-1)
    start_ids = input_ids.gather(1, last_index)
    return torch.cat([start_ids, input_ids[:, :-1]], dim=1)


def _resolve_flag(value: Optional[bool], default: bool) -> bool:
    return default if value is None else value


class MBartEncoder(nn.Module):
    def __init__(self, config: MBartConfig):
        super().__init__()
        self.embed_positions = LearnedPositionalEncoding(
            config.max_positions, config.hidden_size, offset=POSITION_OFFSET
        )
        self.layernorm_embedding = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_epsilon)
        self.dropout = nn.Dropout(config.dropout_rate)
        self.layers = TransformerBlocks(config.encoder_blocks_config())
        self.layer_norm = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_epsilon)

    def forward(
        self,
        input_embeddings: torch.Tensor,
        attention_mask: Optional[torch.Tensor] = None,
        position_ids: Optional[torch.Tensor] = None,
        attention_head_mask: Optional[torch.Tensor] = None,
        output_hidden_states: bool = False,
        output_attentions: bool = False,
    ) -> MBartStackOutput:
        if position_ids is None:
            position_ids = default_position_ids(input_embeddings)

        hidden_state = input_embeddings + self.embed_positions(position_ids)
        hidden_state = self.dropout(self.layernorm_embedding(hidden_state))

        state = self.layers(
            hidden_state,
            attention_mask=attention_mask,
            attention_head_mask=attention_head_mask,
            output_hidden_states=output_hidden_states,
            output_attentions=output_attentions,
        )
        return MBartStackOutput(
            hidden_state=self.layer_norm(state.hidden_state),
            hidden_states=state.hidden_states,
            attentions=state.attentions,
        )


class MBartDecoder(nn.Module):
    def __init__(self, config: MBartConfig):
        super().__init__()
        self.embed_positions = LearnedPositionalEncoding(
            config.max_positions, config.hidden_size, offset=POSITION_OFFSET
        )
        self.layernorm_embedding = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_epsilon)
        self.dropout = nn.Dropout(config.dropout_rate)
        self.layers = TransformerBlocks(config.decoder_blocks_config())
        self.layer_norm = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_epsilon)

    def forward(
        self,
        input_embeddings: torch.Tensor,
        attention_mask: Optional[torch.Tensor] = None,
        position_ids: Optional[torch.Tensor] = None,
        attention_head_mask: Optional[torch.Tensor] = None,
        encoder_hidden_state: Optional[torch.Tensor] = None,
        encoder_attention_mask: Optional[torch.Tensor] = None,
        cross_attention_head_mask: Optional[torch.Tensor] = None,
        cache: Optional[DecoderCache] = None,
        output_hidden_states: bool = False,
        output_attentions: bool = False,
    ) -> MBartStackOutput:
        """
        Args:
            input_embeddings: (batch, seq_len, hidden_size), only the new
                positions when decoding with a cache
            encoder_hidden_state: (batch, src_len, hidden_size); without it the
                cross-attention sublayers are skipped
            cache: DecoderCache, positions then start at the cache offset
        """
        if position_ids is None:
            position_ids = default_position_ids(input_embeddings, get_cache_offset(cache))

        hidden_state = input_embeddings + self.embed_positions(position_ids)
        hidden_state = self.dropout(self.layernorm_embedding(hidden_state))

        state = self.layers(
            hidden_state,
            attention_mask=attention_mask,
            attention_head_mask=attention_head_mask,
            cross_hidden_state=encoder_hidden_state,
            cross_attention_mask=encoder_attention_mask,
            cross_attention_head_mask=cross_attention_head_mask,
            cache=cache,
            position_ids=position_ids,
            output_hidden_states=output_hidden_states,
            output_attentions=output_attentions,
        )
        return MBartStackOutput(
            hidden_state=self.layer_norm(state.hidden_state),
            hidden_states=state.hidden_states,
            attentions=state.attentions,
            cross_attentions=state.cross_attentions,
            cache=state.cache,
        )


def _init_mbart_weights(module: nn.Module, std: float) -> None:
    if isinstance(module, nn.Linear):
        nn.init.normal_(module.weight, mean=0.0, std=std)
        if module.bias is not None:
            nn.init.zeros_(module.bias)
    elif isinstance(module, nn.Embedding):
        nn.init.normal_(module.weight, mean=0.0, std=std)
        if module.padding_idx is not None:
            with torch.no_grad():
                module.weight[module.padding_idx].zero_()


class MBartModel(nn.Module):
    """
    mBART encoder-decoder returning the final decoder hidden state.

    When ``encoder_hidden_state`` is given the encoder is not run; this is how
    generation reuses one encoder pass across all decoding steps.
    """

    def __init__(self, config: MBartConfig):
        super().__init__()
        self.config = config
        self.shared = nn.Embedding(
            config.vocab_size, config.hidden_size, padding_idx=config.pad_token_id
        )
        self.encoder = MBartEncoder(config)
        self.decoder = MBartDecoder(config)
        self.apply(lambda module: _init_mbart_weights(module, config.initializer_scale))

    def embed(self, input_ids: torch.Tensor) -> torch.Tensor:
        return self.shared(input_ids) * self.config.embed_scale

    def init_cache(
        self,
        batch_size: int,
        max_length: int,
        encoder_hidden_state: Optional[torch.Tensor] = None,
    ) -> DecoderCache:
        encoder_sequence_length = None
        if encoder_hidden_state is not None:
            encoder_sequence_length = encoder_hidden_state.size(1)

        return init_cache(
            batch_size,
            max_length,
            hidden_size=self.config.hidden_size,
            num_heads=self.config.decoder_num_attention_heads,
            num_blocks=self.config.decoder_num_blocks,
            encoder_sequence_length=encoder_sequence_length,
            device=self.shared.weight.device,
            dtype=self.shared.weight.dtype,
        )

    def forward(
        self,
        input_ids: Optional[torch.Tensor] = None,
        attention_mask: Optional[torch.Tensor] = None,
        position_ids: Optional[torch.Tensor] = None,
        attention_head_mask: Optional[torch.Tensor] = None,
        input_embeddings: Optional[torch.Tensor] = None,
        decoder_input_ids: Optional[torch.Tensor] = None,
        decoder_attention_mask: Optional[torch.Tensor] = None,
        decoder_position_ids: Optional[torch.Tensor] = None,
        decoder_attention_head_mask: Optional[torch.Tensor] = None,
        decoder_input_embeddings: Optional[torch.Tensor] = None,
        encoder_hidden_state: Optional[torch.Tensor] = None,
        cross_attention_head_mask: Optional[torch.Tensor] = None,
        cache: Optional[DecoderCache] = None,
        output_hidden_states: Optional[bool] = None,
        output_attentions: Optional[bool] = None,
    ) -> Seq2SeqOutput:
        output_hidden_states = _resolve_flag(output_hidden_states, self.config.output_hidden_states)
        output_attentions = _resolve_flag(output_attentions, self.config.output_attentions)

        encoder_hidden_states = encoder_attentions = None
        if encoder_hidden_state is None:
            if input_embeddings is None:
                if input_ids is None:
                    raise ValueError(
                        "one of input_ids, input_embeddings or encoder_hidden_state is required"
                    )
                input_embeddings = self.embed(input_ids)
            encoder_outputs = self.encoder(
                input_embeddings,
                attention_mask=attention_mask,
                position_ids=position_ids,
                attention_head_mask=attention_head_mask,
                output_hidden_states=output_hidden_states,
                output_attentions=output_attentions,
            )
            encoder_hidden_state = encoder_outputs.hidden_state
            encoder_hidden_states = encoder_outputs.hidden_states
            encoder_attentions = encoder_outputs.attentions

        if decoder_input_embeddings is None:
            if decoder_input_ids is None:
                if input_ids is None:
                    raise ValueError(
                        "decoder_input_ids or decoder_input_embeddings are required "
                        "when input_ids are not given"
                    )
                decoder_input_ids = shift_tokens_right(input_ids, self.config.pad_token_id)
            decoder_input_embeddings = self.embed(decoder_input_ids)

        decoder_outputs = self.decoder(
            decoder_input_embeddings,
            attention_mask=decoder_attention_mask,
            position_ids=decoder_position_ids,
            attention_head_mask=decoder_attention_head_mask,
            encoder_hidden_state=encoder_hidden_state,
            encoder_attention_mask=attention_mask,
            cross_attention_head_mask=cross_attention_head_mask,
            cache=cache,
            output_hidden_states=output_hidden_states,
            output_attentions=output_attentions,
        )

        return Seq2SeqOutput(
            hidden_state=decoder_outputs.hidden_state,
            cache=decoder_outputs.cache,
            encoder_hidden_state=encoder_hidden_state,
            decoder_hidden_states=decoder_outputs.hidden_states,
            decoder_attentions=decoder_outputs.attentions,
            cross_attentions=decoder_outputs.cross_attentions,
            encoder_hidden_states=encoder_hidden_states,
            encoder_attentions=encoder_attentions,
        )


def _with_head(outputs: Seq2SeqOutput, **heads: torch.Tensor) -> Seq2SeqHeadOutput:
    fields = {name: getattr(outputs, name) for name in Seq2SeqOutput.__dataclass_fields__}
    return Seq2SeqHeadOutput(**fields, **heads)


class MBartForConditionalGeneration(nn.Module):
    """mBART with a language modeling head tied to the shared token embedding."""

    def __init__(self, config: MBartConfig):
        super().__init__()
        self.config = config
        self.model = MBartModel(config)
        self.register_buffer("final_logits_bias", torch.zeros(1, config.vocab_size))

    def init_cache(self, batch_size, max_length, encoder_hidden_state=None) -> DecoderCache:
        return self.model.init_cache(batch_size, max_length, encoder_hidden_state)

    def forward(self, *args, **kwargs) -> Seq2SeqHeadOutput:
        outputs = self.model(*args, **kwargs)
        logits = F.linear(outputs.hidden_state, self.model.shared.weight)
        return _with_head(outputs, logits=logits + self.final_logits_bias.to(logits.dtype))


class MBartClassificationHead(nn.Module):
    def __init__(self, config: MBartConfig):
        super().__init__()
        self.dropout = nn.Dropout(config.classifier_dropout_rate)
        self.dense = nn.Linear(config.hidden_size, config.hidden_size)
        self.out_proj = nn.Linear(config.hidden_size, config.num_labels)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x = torch.tanh(self.dense(self.dropout(x)))
        return self.out_proj(self.dropout(x))


class MBartForSequenceClassification(nn.Module):
    """Classifies the decoder state at the last end-of-sequence token of every row."""

    def __init__(self, config: MBartConfig):
        super().__init__()
        self.config = config
        self.model = MBartModel(config)
        self.classification_head = MBartClassificationHead(config)
        self.classification_head.apply(
            lambda module: _init_mbart_weights(module, config.initializer_scale)
        )

    def forward(self, input_ids: torch.Tensor, **kwargs) -> Seq2SeqHeadOutput:
        outputs = self.model(input_ids, **kwargs)

        positions = torch.arange(input_ids.size(1), device=input_ids.device)
        eos_positions = torch.where(input_ids.eq(self.config.eos_token_id), positions, -1)
        # Rows without an end-of-sequence token fall back to the last position
        eos_index = eos_positions.max(dim=1).values
        batch_index = torch.arange(input_ids.size(0), device=input_ids.device)
        sentence_representation = outputs.hidden_state[batch_index, eos_index]

        return _with_head(outputs, logits=self.classification_head(sentence_representation))


class MBartForQuestionAnswering(nn.Module):
    def __init__(self, config: MBartConfig):
        super().__init__()
        self.config = config
        self.model = MBartModel(config)
        self.qa_outputs = nn.Linear(config.hidden_size, 2)
        _init_mbart_weights(self.qa_outputs, config.initializer_scale)

    def forward(self, *args, **kwargs) -> Seq2SeqHeadOutput:
        outputs = self.model(*args, **kwargs)
        start_logits, end_logits = self.qa_outputs(outputs.hidden_state).unbind(dim=-1)
        return _with_head(outputs, start_logits=start_logits, end_logits=end_logits)


class MBartForCausalLM(nn.Module):
    """The mBART decoder alone, used as a language model (optionally cross-attending)."""

    def __init__(self, config: MBartConfig):
        super().__init__()
        self.config = config
        self.embed_tokens = nn.Embedding(
            config.vocab_size, config.hidden_size, padding_idx=config.pad_token_id
        )
        self.decoder = MBartDecoder(config)
        self.apply(lambda module: _init_mbart_weights(module, config.initializer_scale))

    def init_cache(
        self,
        batch_size: int,
        max_length: int,
        encoder_hidden_state: Optional[torch.Tensor] = None,
    ) -> DecoderCache:
        return init_cache(
            batch_size,
            max_length,
            hidden_size=self.config.hidden_size,
            num_heads=self.config.decoder_num_attention_heads,
            num_blocks=self.config.decoder_num_blocks,
            encoder_sequence_length=(
                encoder_hidden_state.size(1) if encoder_hidden_state is not None else None
            ),
            device=self.embed_tokens.weight.device,
            dtype=self.embed_tokens.weight.dtype,
        )

    def forward(
        self,
        input_ids: Optional[torch.Tensor] = None,
        attention_mask: Optional[torch.Tensor] = None,
        position_ids: Optional[torch.Tensor] = None,
        attention_head_mask: Optional[torch.Tensor] = None,
        input_embeddings: Optional[torch.Tensor] = None,
        encoder_hidden_state: Optional[torch.Tensor] = None,
        encoder_attention_mask: Optional[torch.Tensor] = None,
        cross_attention_head_mask: Optional[torch.Tensor] = None,
        cache: Optional[DecoderCache] = None,
        output_hidden_states: Optional[bool] = None,
        output_attentions: Optional[bool] = None,
    ) -> CausalLMOutput:
        if input_embeddings is None:
            if input_ids is None:
                raise ValueError("one of input_ids or input_embeddings is required")
            input_embeddings = self.embed_tokens(input_ids) * self.config.embed_scale

        outputs = self.decoder(
            input_embeddings,
            attention_mask=attention_mask,
            position_ids=position_ids,
            attention_head_mask=attention_head_mask,
            encoder_hidden_state=encoder_hidden_state,
            encoder_attention_mask=encoder_attention_mask,
            cross_attention_head_mask=cross_attention_head_mask,
            cache=cache,
            output_hidden_states=_resolve_flag(
                output_hidden_states, self.config.output_hidden_states
            ),
            output_attentions=_resolve_flag(output_attentions, self.config.output_attentions),
        )

        return CausalLMOutput(
            logits=F.linear(outputs.hidden_state, self.embed_tokens.weight),
            cache=outputs.cache,
            hidden_states=outputs.hidden_states,
            attentions=outputs.attentions,
            cross_attentions=outputs.cross_attentions,
        )
